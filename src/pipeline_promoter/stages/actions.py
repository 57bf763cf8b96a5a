"""
Stage Actions - executable units behind build, deploy, test and promote stages.

Provides actions for:
- Doing nothing (placeholders, dry runs)
- Running a shell command (external build and rollout tools)
- Calling an HTTP API (external orchestrators)
- Promoting an artifact between environments

Actions raise TransientError for failures worth retrying, ActionError for
everything else, and honour the context's cancellation token.
"""

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx

from pipeline_promoter.core.exceptions import (
    ActionError,
    NotFoundError,
    StageAbortedError,
    TransientError,
)
from pipeline_promoter.core.models import StageSpec
from pipeline_promoter.registry.storage import ArtifactRegistry
from pipeline_promoter.stages.context import StageContext

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 10_000


@dataclass
class ActionOutput:
    """What an action hands back to the executor."""

    output: str = ""
    data: dict[str, Any] = field(default_factory=dict)


class StageAction(Protocol):
    """Callable run by the stage executor."""

    # False when the action is an atomicity boundary that must not be
    # abandoned half way (abort and timeout wait for it to finish)
    interruptible: bool

    def __call__(self, stage: StageSpec, context: StageContext) -> ActionOutput: ...


def _format(template: str, parameters: dict[str, Any]) -> str:
    """Substitute run parameters, leaving the template alone if any are missing."""
    try:
        return template.format(**parameters)
    except (KeyError, IndexError, AttributeError):
        return template


def _tail(text: str) -> str:
    return text[-MAX_OUTPUT_CHARS:]


class NoopAction:
    """
    Succeeds without side effects.

    The optional "sleep" parameter waits that many seconds while still
    answering cancellation.
    """

    interruptible = True

    def __call__(self, stage: StageSpec, context: StageContext) -> ActionOutput:
        sleep = float(stage.params.get("sleep", 0))
        if sleep > 0:
            context.cancel_token.wait(sleep)
        context.check_cancelled()
        return ActionOutput(output=f"{stage.name}: nothing to do", data=dict(stage.params))


class CommandAction:
    """
    Run a command as a child process.

    Parameters:
        command: string (split with shlex) or argument list
        cwd: working directory
        env: extra environment variables
        transient_exit_codes: exit codes worth retrying

    The process is killed when the attempt is cancelled or times out.
    """

    interruptible = True

    def __call__(self, stage: StageSpec, context: StageContext) -> ActionOutput:
        command = stage.params.get("command")
        if not command:
            raise ActionError(f"Stage '{stage.name}' has no command", action="command")

        if isinstance(command, str):
            argv = shlex.split(_format(command, context.parameters))
        else:
            argv = [_format(str(part), context.parameters) for part in command]

        env = None
        if stage.params.get("env"):
            env = {**os.environ, **{k: str(v) for k, v in stage.params["env"].items()}}

        context.check_cancelled()
        logger.info(f"[{context.run_id}] {stage.name}: running {argv[0]}")
        try:
            process = subprocess.Popen(
                argv,
                cwd=stage.params.get("cwd"),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                shell=False,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ActionError(f"Cannot run {argv[0]}: {e}", action="command")

        unregister = context.cancel_token.add_callback(process.kill)
        try:
            stdout, _ = process.communicate()
        finally:
            unregister()

        output = _tail(stdout or "")
        if context.cancel_token.cancelled:
            raise StageAbortedError(f"Command killed: {context.cancel_token.reason}")

        transient = {int(c) for c in stage.params.get("transient_exit_codes", [])}
        if process.returncode in transient:
            error = TransientError(
                f"{argv[0]} exited with {process.returncode}",
                details={"exit_code": process.returncode},
            )
            error.output = output
            raise error
        if process.returncode != 0:
            raise ActionError(
                f"{argv[0]} exited with {process.returncode}",
                action="command",
                output=output,
                details={"exit_code": process.returncode},
            )

        return ActionOutput(output=output, data={"exit_code": 0})


class HttpAction:
    """
    Call an external API, e.g. an orchestrator's rollout endpoint.

    Parameters:
        url: target URL (run parameters are substituted)
        method: HTTP method (default GET)
        headers: request headers
        json: request body
        timeout: request timeout in seconds (default 30)

    5xx responses, timeouts and network errors are transient.
    """

    interruptible = True

    def __call__(self, stage: StageSpec, context: StageContext) -> ActionOutput:
        url = stage.params.get("url")
        if not url:
            raise ActionError(f"Stage '{stage.name}' has no url", action="http")

        formatted_url = _format(url, context.parameters)
        parsed = urlparse(formatted_url)
        if not parsed.scheme or not parsed.netloc:
            raise ActionError(f"Invalid URL: {formatted_url}", action="http")

        method = stage.params.get("method", "GET").upper()
        timeout = float(stage.params.get("timeout", 30))
        request_kwargs: dict[str, Any] = {
            "method": method,
            "url": formatted_url,
            "headers": stage.params.get("headers", {}),
        }
        if stage.params.get("json") is not None and method in ("POST", "PUT", "PATCH"):
            request_kwargs["json"] = stage.params["json"]

        context.check_cancelled()
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.request(**request_kwargs)
        except httpx.TimeoutException:
            raise TransientError(f"HTTP request timeout after {timeout}s")
        except httpx.NetworkError as e:
            raise TransientError(f"Network error: {e}")

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text[:1000]

        data = {"status_code": response.status_code, "response": body}
        output = f"{method} {formatted_url} -> {response.status_code}"

        if response.status_code >= 500:
            error = TransientError(f"HTTP {response.status_code}: Server error")
            error.output = output
            raise error
        if response.status_code >= 400:
            raise ActionError(
                f"HTTP {response.status_code}: Client error",
                action="http",
                output=output,
            )
        return ActionOutput(output=output, data=data)


class PromoteAction:
    """
    Promote an artifact between environments through the registry.

    Parameters:
        source_env, tag: what to promote
        dest_env, dest_tag: where to (dest_tag defaults to tag)
        as: identity to act as (defaults to the pipeline's service identity)
        digest_from: earlier stage whose "digest" output the source tag must
            still resolve to

    The registry write is the atomicity boundary, so this action is not
    interruptible.
    """

    interruptible = False

    def __init__(self, registry: ArtifactRegistry):
        self._registry = registry

    def __call__(self, stage: StageSpec, context: StageContext) -> ActionOutput:
        params = stage.params
        missing = [k for k in ("source_env", "tag", "dest_env") if not params.get(k)]
        if missing:
            raise ActionError(
                f"Promote stage '{stage.name}' is missing {', '.join(missing)}",
                action="promote",
            )

        tag = _format(str(params["tag"]), context.parameters)
        dest_tag = _format(str(params.get("dest_tag") or tag), context.parameters)
        identity = params.get("as") or context.service_identity
        if not identity:
            raise ActionError("No identity to promote as", action="promote")

        expected = None
        if params.get("digest_from"):
            expected = context.output_of(params["digest_from"]).get("digest")
            if not expected:
                raise ActionError(
                    f"Stage '{params['digest_from']}' recorded no digest", action="promote"
                )

        context.check_cancelled()
        artifact = self._registry.promote(
            params["source_env"],
            tag,
            params["dest_env"],
            dest_tag,
            identity,
            expected_digest=expected,
        )
        return ActionOutput(
            output=f"{params['dest_env']}:{dest_tag} -> {artifact.digest}",
            data={
                "digest": artifact.digest,
                "environment": artifact.environment,
                "tag": dest_tag,
                "source": f"{params['source_env']}:{tag}",
                "identity": identity,
            },
        )


class ActionCatalog:
    """Name -> action lookup used by the stage executor."""

    def __init__(self) -> None:
        self._actions: dict[str, StageAction] = {}

    def register(self, name: str, action: StageAction) -> None:
        """Register or replace an action."""
        self._actions[name] = action

    def get(self, name: str) -> StageAction:
        """
        Look an action up.

        Raises:
            NotFoundError: If no action has that name
        """
        action = self._actions.get(name)
        if action is None:
            raise NotFoundError(
                f"Stage action '{name}' is not registered",
                entity_type="action",
                entity_id=name,
            )
        return action

    def __contains__(self, name: str) -> bool:
        return name in self._actions

    def names(self) -> list[str]:
        return sorted(self._actions)


def default_catalog(registry: ArtifactRegistry) -> ActionCatalog:
    """Catalog with the built-in actions."""
    catalog = ActionCatalog()
    catalog.register("noop", NoopAction())
    catalog.register("command", CommandAction())
    catalog.register("http", HttpAction())
    catalog.register("promote", PromoteAction(registry))
    return catalog
