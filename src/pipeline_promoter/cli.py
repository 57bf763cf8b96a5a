"""
Pipeline Promoter CLI - Command-line interface.

Promote artifacts, administer environments and access policy, and run
pipelines from the terminal.

Exit codes: 0 success, 1 failure, 2 not found, 3 conflict, 4 permission denied.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pipeline_promoter.config import configure_logging, get_settings
from pipeline_promoter.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PromoterError,
    format_exception,
)
from pipeline_promoter.core.models import (
    Decision,
    Permission,
    Run,
    RunStatus,
    StageOutcome,
)
from pipeline_promoter.orchestrator.core import PipelineEngine, build_engine

app = typer.Typer(
    name="pipeline-promoter",
    help="Pipeline Promoter - staged build, approval and promotion pipelines",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

EXIT_FAILURE = 1
EXIT_NOT_FOUND = 2
EXIT_CONFLICT = 3
EXIT_PERMISSION_DENIED = 4

STATUS_STYLES = {
    RunStatus.SUCCEEDED: "green",
    RunStatus.FAILED: "red",
    RunStatus.ABORTED: "yellow",
    RunStatus.AWAITING_APPROVAL: "magenta",
    RunStatus.RUNNING: "cyan",
    RunStatus.PENDING: "dim",
}

OUTCOME_STYLES = {
    StageOutcome.SUCCEEDED: "green",
    StageOutcome.FAILED: "red",
    StageOutcome.TIMED_OUT: "red",
    StageOutcome.REJECTED: "red",
    StageOutcome.ABORTED: "yellow",
}


def exit_code_for(error: Exception) -> int:
    """Process exit code for an error."""
    if isinstance(error, NotFoundError):
        return EXIT_NOT_FOUND
    if isinstance(error, ConflictError):
        return EXIT_CONFLICT
    if isinstance(error, PermissionDeniedError):
        return EXIT_PERMISSION_DENIED
    return EXIT_FAILURE


@contextmanager
def handle_errors() -> Iterator[None]:
    """Print domain errors and exit with their code."""
    try:
        yield
    except PromoterError as e:
        err_console.print(f"[red]Error: {format_exception(e)}[/red]")
        raise typer.Exit(exit_code_for(e))


def _engine() -> PipelineEngine:
    return build_engine(get_settings())


def _parse_pairs(values: Optional[list[str]], option: str) -> dict[str, str]:
    pairs = {}
    for value in values or []:
        key, sep, val = value.partition("=")
        if not sep or not key:
            err_console.print(f"[red]{option} expects key=value, got: {value}[/red]")
            raise typer.Exit(EXIT_FAILURE)
        pairs[key] = val
    return pairs


def _status(status: RunStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def _print_run(run: Run) -> None:
    console.print(
        Panel.fit(
            f"[bold blue]Run {run.run_id}[/bold blue]\n"
            f"Pipeline: {run.definition_id}@{run.definition_version}\n"
            f"Triggered by: {run.triggered_by}\n"
            f"Status: {_status(run.status)}",
        )
    )

    table = Table(title="Stages")
    table.add_column("#", justify="right")
    table.add_column("Stage", style="cyan")
    table.add_column("Kind")
    table.add_column("Outcome")
    table.add_column("Attempts", justify="right")
    table.add_column("Detail")

    for i, stage in enumerate(run.stages):
        if i < len(run.results):
            result = run.results[i]
            style = OUTCOME_STYLES.get(result.outcome, "white")
            detail = result.error_message or result.output
            table.add_row(
                str(i + 1),
                stage.name,
                stage.kind.value,
                f"[{style}]{result.outcome.value}[/{style}]",
                str(result.attempts),
                detail[:80],
            )
        else:
            table.add_row(str(i + 1), stage.name, stage.kind.value, "[dim]-[/dim]", "", "")

    console.print(table)

    pending = run.pending_approval()
    if pending:
        console.print(
            f"[magenta]Awaiting approval {pending.request_id} "
            f"until {pending.deadline}[/magenta]"
        )
    if run.status == RunStatus.FAILED:
        console.print(
            f"[red]Failed at '{run.failed_stage}' "
            f"({run.error_kind.value if run.error_kind else 'unknown'}): {run.error_message}[/red]"
        )


@app.callback()
def callback(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
):
    """Pipeline Promoter."""
    configure_logging(log_level)


# Registry


@app.command()
def promote(
    source_env: str = typer.Argument(..., help="Source environment"),
    tag: str = typer.Argument(..., help="Source tag"),
    dest_env: str = typer.Argument(..., help="Destination environment"),
    dest_tag: str = typer.Argument(..., help="Destination tag"),
    identity: str = typer.Option(..., "--as", help="Identity to promote as"),
):
    """Retag source_env:tag into dest_env:dest_tag and print the digest."""
    with handle_errors():
        artifact = _engine().registry.promote(source_env, tag, dest_env, dest_tag, identity)
    typer.echo(artifact.digest)


@app.command("create-env")
def create_env(
    name: str = typer.Argument(..., help="Environment name"),
    actor: str = typer.Option("admin", "--actor", help="Administrator creating it"),
):
    """Create an environment."""
    with handle_errors():
        try:
            _engine().registry.create_environment(name, actor=actor)
        except ValueError as e:
            err_console.print(f"[red]{e}[/red]")
            raise typer.Exit(EXIT_FAILURE)
    console.print(f"[green]Created environment {name}[/green]")


@app.command()
def push(
    environment: str = typer.Argument(..., help="Environment"),
    tag: str = typer.Argument(..., help="Tag to bind"),
    digest: Optional[str] = typer.Option(None, "--digest", "-d", help="Existing digest"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Build output to hash"),
    label: Optional[list[str]] = typer.Option(None, "--label", "-l", help="key=value label"),
    actor: str = typer.Option("build", "--actor", help="Identity recording the push"),
):
    """Record a build output under environment:tag."""
    if (digest is None) == (file is None):
        err_console.print("[red]Pass exactly one of --digest or --file[/red]")
        raise typer.Exit(EXIT_FAILURE)

    content = None
    if file is not None:
        if not file.is_file():
            err_console.print(f"[red]File does not exist: {file}[/red]")
            raise typer.Exit(EXIT_FAILURE)
        content = file.read_bytes()

    labels = _parse_pairs(label, "--label")
    with handle_errors():
        try:
            artifact = _engine().registry.push(
                environment, tag, content=content, digest=digest, labels=labels, actor=actor
            )
        except ValueError as e:
            err_console.print(f"[red]{e}[/red]")
            raise typer.Exit(EXIT_FAILURE)
    typer.echo(artifact.digest)


@app.command()
def tags(
    environment: str = typer.Argument(..., help="Environment"),
    history: bool = typer.Option(False, "--history", help="Show recent tag moves"),
):
    """List tag bindings in an environment."""
    with handle_errors():
        registry = _engine().registry
        bindings = registry.list_tags(environment)
        moves = registry.tag_history(environment) if history else []

    table = Table(title=f"Tags in {environment} ({len(bindings)})")
    table.add_column("Tag", style="cyan")
    table.add_column("Digest")
    for tag_name, digest in bindings.items():
        table.add_row(tag_name, digest)
    console.print(table)

    if history:
        table = Table(title="Tag History")
        table.add_column("Time", style="cyan")
        table.add_column("Tag")
        table.add_column("Digest")
        table.add_column("Source")
        table.add_column("Actor")
        for move in moves:
            table.add_row(move.moved_at[:19], move.tag, move.digest[:19], move.source or "-", move.actor)
        console.print(table)


# Access policy


@app.command()
def grant(
    identity: str = typer.Argument(..., help="Human or service identity"),
    environment: str = typer.Argument(..., help="Environment"),
    permissions: list[Permission] = typer.Argument(..., help="read, deploy, promote"),
    actor: str = typer.Option("admin", "--actor", help="Administrator making the change"),
):
    """Grant permissions on an environment."""
    current = _engine().policy.grant(identity, environment, permissions, actor=actor)
    console.print(
        f"[green]{identity} on {environment}: {', '.join(sorted(p.value for p in current))}[/green]"
    )


@app.command()
def revoke(
    identity: str = typer.Argument(..., help="Human or service identity"),
    environment: str = typer.Argument(..., help="Environment"),
    permissions: Optional[list[Permission]] = typer.Argument(None, help="Omit to revoke all"),
    actor: str = typer.Option("admin", "--actor", help="Administrator making the change"),
):
    """Revoke permissions on an environment."""
    remaining = _engine().policy.revoke(identity, environment, permissions or None, actor=actor)
    left = ", ".join(sorted(p.value for p in remaining)) or "nothing"
    console.print(f"[yellow]{identity} on {environment} now holds {left}[/yellow]")


@app.command()
def can(
    identity: str = typer.Argument(..., help="Human or service identity"),
    action: Permission = typer.Argument(..., help="read, deploy or promote"),
    environment: str = typer.Argument(..., help="Environment"),
):
    """Check a permission (exit 4 when denied)."""
    if _engine().policy.authorize(identity, action, environment):
        console.print(f"[green]allowed[/green]: {identity} may {action.value} in {environment}")
        return
    console.print(f"[red]denied[/red]: {identity} may not {action.value} in {environment}")
    raise typer.Exit(EXIT_PERMISSION_DENIED)


@app.command("policy-log")
def policy_log(
    limit: int = typer.Option(50, "--limit", "-n", help="Number of changes to show"),
):
    """Show the access policy change log, newest first."""
    changes = list(reversed(_engine().policy.changes()))[:limit]
    if not changes:
        console.print("[yellow]No policy changes recorded[/yellow]")
        return

    table = Table(title=f"Policy Changes ({len(changes)})")
    table.add_column("Time", style="cyan")
    table.add_column("Operation")
    table.add_column("Identity")
    table.add_column("Environment")
    table.add_column("Permissions")
    table.add_column("Actor", style="dim")
    for change in changes:
        style = "green" if change.operation == "grant" else "yellow"
        table.add_row(
            change.timestamp[:19],
            f"[{style}]{change.operation}[/{style}]",
            change.identity,
            change.environment,
            ", ".join(p.value for p in change.permissions),
            change.actor,
        )
    console.print(table)


# Pipelines


@app.command()
def define(
    path: Path = typer.Argument(..., help="YAML or JSON pipeline definition"),
):
    """Register pipeline definitions from a file."""
    with handle_errors():
        definitions = _engine().catalog.load_file(path)
    for definition in definitions:
        console.print(
            f"[green]Registered {definition.id}[/green] version {definition.version} "
            f"({len(definition.stages)} stages)"
        )


@app.command()
def pipelines():
    """List registered pipelines."""
    engine = _engine()
    definitions = engine.catalog.list_definitions()

    table = Table(title=f"Pipelines ({len(definitions)})")
    table.add_column("Id", style="cyan")
    table.add_column("Version", style="magenta")
    table.add_column("Description")
    table.add_column("Stages", style="green")
    for definition in definitions:
        stages = "\n".join(
            f"  {i + 1}. {s.name} ({s.kind.value})" for i, s in enumerate(definition.stages)
        )
        table.add_row(definition.id, definition.version, definition.description, stages)
    console.print(table)


@app.command()
def run(
    pipeline_id: str = typer.Argument(..., help="Pipeline to run"),
    identity: str = typer.Option("cli", "--as", help="Identity triggering the run"),
    param: Optional[list[str]] = typer.Option(None, "--param", "-p", help="key=value parameter"),
    approver: Optional[str] = typer.Option(
        None, "--approver", help="Identity answering approval gates"
    ),
    decision: Decision = typer.Option(
        Decision.APPROVE, "--decision", help="Decision the approver records"
    ),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for the run to finish"),
):
    """Start a pipeline run and follow it to completion."""
    parameters = _parse_pairs(param, "--param")
    engine = _engine()

    with handle_errors():
        run_id = engine.start(pipeline_id, triggered_by=identity, parameters=parameters)
    console.print(f"Started run [cyan]{run_id}[/cyan]")
    if not wait:
        return

    answered: set[str] = set()
    try:
        current = engine.wait(run_id, timeout=0.2)
        while not current.is_terminal:
            pending = current.pending_approval()
            if pending and pending.request_id not in answered:
                answered.add(pending.request_id)
                if approver:
                    with handle_errors():
                        engine.decide(run_id, pending.request_id, decision, approver)
                    console.print(f"{approver} recorded {decision.value} on {pending.stage_name}")
                else:
                    console.print(
                        f"[magenta]Waiting for approval {pending.request_id} "
                        f"(stage {pending.stage_name}, deadline {pending.deadline})[/magenta]"
                    )
            current = engine.wait(run_id, timeout=0.2)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted, aborting run[/yellow]")
        with handle_errors():
            engine.abort(run_id, actor=identity)
        current = engine.wait(run_id, timeout=10)

    _print_run(current)
    if current.status != RunStatus.SUCCEEDED:
        raise typer.Exit(EXIT_FAILURE)


@app.command()
def abort(
    run_id: str = typer.Argument(..., help="Run to abort"),
    actor: str = typer.Option("operator", "--as", help="Identity aborting the run"),
):
    """Abort a run."""
    with handle_errors():
        current = _engine().abort(run_id, actor=actor)
    console.print(f"[yellow]Run {run_id} {current.status.value}[/yellow]")


@app.command()
def status(
    run_id: str = typer.Argument(..., help="Run id"),
):
    """Show a run's state and stage results."""
    with handle_errors():
        current = _engine().get_status(run_id)
    _print_run(current)


@app.command()
def history(
    pipeline_id: Optional[str] = typer.Option(None, "--pipeline", help="Filter by pipeline"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs to show"),
):
    """Show run history, newest first."""
    runs = _engine().list_runs(definition_id=pipeline_id, limit=limit)
    if not runs:
        console.print("[yellow]No runs found[/yellow]")
        return

    table = Table(title=f"Run History ({len(runs)} runs)")
    table.add_column("Created", style="cyan")
    table.add_column("Pipeline")
    table.add_column("Status")
    table.add_column("Stages", justify="right")
    table.add_column("Failed Stage")
    table.add_column("Run ID", style="dim")
    for item in runs:
        table.add_row(
            item.created_at[:19],
            item.definition_id,
            _status(item.status),
            f"{len(item.results)}/{len(item.stages)}",
            item.failed_stage or "-",
            item.run_id,
        )
    console.print(table)


@app.command()
def version():
    """Show Pipeline Promoter version."""
    from pipeline_promoter import __version__

    console.print(f"Pipeline Promoter v{__version__}")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
