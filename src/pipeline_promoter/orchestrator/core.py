"""
Orchestrator Core - pipeline run coordination.

Drives runs through their ordered stage list, suspends them at approval
gates, and is the only writer of run state.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pipeline_promoter.approval.gate import ApprovalGate
from pipeline_promoter.audit import AuditEventType, AuditLevel, AuditLogger, AuditResult
from pipeline_promoter.config import PromoterSettings, get_settings
from pipeline_promoter.core.exceptions import (
    AlreadyDecidedError,
    ConflictError,
    NotFoundError,
    StageAbortedError,
)
from pipeline_promoter.core.models import (
    ApprovalDisposition,
    ApprovalRequest,
    Decision,
    ErrorKind,
    Identity,
    Run,
    RunStatus,
    StageKind,
    StageOutcome,
    StageResult,
    StageSpec,
    utc_now,
)
from pipeline_promoter.pipelines.catalog import PipelineCatalog
from pipeline_promoter.policy.store import AccessPolicyStore
from pipeline_promoter.registry.storage import ArtifactRegistry
from pipeline_promoter.registry.triggers import install_webhooks
from pipeline_promoter.stages.actions import default_catalog
from pipeline_promoter.stages.context import CancelToken, StageContext
from pipeline_promoter.stages.executor import StageExecutor
from pipeline_promoter.state.manager import RunStore

logger = logging.getLogger(__name__)


@dataclass
class _ActiveRun:
    """A run executing on a worker thread in this process."""

    run: Run
    token: CancelToken = field(default_factory=CancelToken)
    thread: threading.Thread | None = None
    done: threading.Event = field(default_factory=threading.Event)
    aborted_by: str | None = None


class PipelineEngine:
    """
    Pipeline execution engine.

    Executes runs with:
    - One worker thread per run, stages strictly sequential
    - Suspension at approval stages without holding registry locks
    - Operator abort observed at the next cooperative check-in
    - A commit to the run store after every transition
    """

    def __init__(
        self,
        registry: ArtifactRegistry,
        catalog: PipelineCatalog,
        store: RunStore,
        executor: StageExecutor,
        gate: ApprovalGate,
        audit: AuditLogger | None = None,
        settings: PromoterSettings | None = None,
    ):
        """Initialize the engine with its collaborators."""
        self._registry = registry
        self._catalog = catalog
        self._store = store
        self._executor = executor
        self._gate = gate
        self._audit = audit
        self._settings = settings or PromoterSettings()

        self._lock = threading.RLock()
        self._active: dict[str, _ActiveRun] = {}
        self._gate.set_change_callback(self._on_approval_change)

    @property
    def registry(self) -> ArtifactRegistry:
        return self._registry

    @property
    def policy(self) -> AccessPolicyStore:
        return self._registry.policy

    @property
    def catalog(self) -> PipelineCatalog:
        return self._catalog

    @property
    def store(self) -> RunStore:
        return self._store

    @property
    def executor(self) -> StageExecutor:
        return self._executor

    @property
    def gate(self) -> ApprovalGate:
        return self._gate

    @property
    def audit(self) -> AuditLogger | None:
        return self._audit

    @property
    def settings(self) -> PromoterSettings:
        return self._settings

    def _commit(self, run: Run) -> None:
        """Persist a run transition. Callers hold the engine lock."""
        self._store.save_run(run)

    def _record(self, event_type: AuditEventType, action: str, run: Run, **kwargs: Any) -> None:
        if self._audit:
            self._audit.record(event_type, action, run_id=run.run_id, target=run.definition_id, **kwargs)

    @staticmethod
    def _new_run_id() -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        return f"run_{timestamp}_{uuid.uuid4().hex[:6]}"

    # Run control

    def start(
        self,
        definition_id: str,
        triggered_by: Identity | str = "system",
        parameters: dict[str, Any] | None = None,
    ) -> str:
        """
        Start a run of the current version of a definition.

        The run keeps a snapshot of the stages; later edits to the
        definition only affect later runs.

        Returns:
            The new run id

        Raises:
            NotFoundError: If the definition is unknown
        """
        definition = self._catalog.get(definition_id)
        run = Run(
            run_id=self._new_run_id(),
            definition_id=definition.id,
            definition_version=definition.version,
            stages=list(definition.stages),
            triggered_by=str(triggered_by),
            service_identity=definition.service_identity or self._settings.service_identity,
            parameters=dict(parameters or {}),
        )
        active = _ActiveRun(run=run)
        with self._lock:
            self._active[run.run_id] = active
            self._commit(run)

        logger.info(
            f"[{run.run_id}] Started {definition.id}@{definition.version} for {run.triggered_by}"
        )
        self._record(
            AuditEventType.RUN_STARTED,
            f"Started pipeline {definition.id}",
            run,
            actor=run.triggered_by,
            version=definition.version,
        )
        self._launch(active)
        return run.run_id

    def _launch(self, active: _ActiveRun) -> None:
        active.thread = threading.Thread(
            target=self._execute,
            args=(active,),
            name=f"run-{active.run.run_id}",
            daemon=True,
        )
        active.thread.start()

    def abort(self, run_id: str, actor: Identity | str = "operator") -> Run:
        """
        Abort a pending, running or suspended run.

        The current action is cancelled and the remaining stages are skipped.

        Raises:
            NotFoundError: If the run is unknown
            ConflictError: If the run is already terminal or being aborted
        """
        actor = str(actor)
        with self._lock:
            active = self._active.get(run_id)
            run = active.run if active else self._store.require_run(run_id)
            if run.is_terminal or (active is not None and active.token.cancelled):
                raise ConflictError(
                    f"Run '{run_id}' is already {run.status.value}",
                    resource=run_id,
                    details={"status": run.status.value},
                )

            if active is None:
                # Not executing in this process; nothing to cancel
                self._withdraw_pending(run, actor)
                self._finish(run, RunStatus.ABORTED, aborted_by=actor)
                return run.model_copy(deep=True)

            # Cancelled under the lock so the worker cannot finish the run
            # between this check and the cancellation
            active.aborted_by = actor
            active.token.cancel(f"aborted by {actor}")
            logger.info(f"[{run_id}] Abort requested by {actor}")
            return run.model_copy(deep=True)

    def decide(
        self,
        run_id: str,
        request_id: str,
        decision: Decision | str,
        identity: Identity | str,
        comment: str | None = None,
    ) -> ApprovalRequest:
        """
        Record an approval decision for a run's gate.

        Raises:
            NotFoundError: If the run or request is unknown, or the request
                belongs to another run
            AlreadyDecidedError: If the request is already terminal
            ConflictError: If the run ended while the request was open
            PermissionDeniedError: If the decider may not promote into the
                gated environment
        """
        with self._lock:
            active = self._active.get(run_id)
            run = active.run if active else self._store.require_run(run_id)
            request = next((a for a in run.approvals if a.request_id == request_id), None)
            if request is None:
                raise NotFoundError(
                    f"Approval request '{request_id}' not found for run '{run_id}'",
                    entity_type="approval_request",
                    entity_id=request_id,
                )
            request = self._store.get_approval(request_id) or request
            if request.is_terminal:
                raise AlreadyDecidedError(
                    f"Approval request '{request_id}' is already {request.disposition.value}",
                    request_id=request_id,
                    disposition=request.disposition.value,
                )
            if run.is_terminal:
                raise ConflictError(
                    f"Run '{run_id}' is already {run.status.value}",
                    resource=run_id,
                    details={"status": run.status.value},
                )

        # The gate decides outside the engine lock; it calls back into
        # _on_approval_change which takes it
        return self._gate.decide(request_id, decision, identity, comment)

    def get_status(self, run_id: str) -> Run:
        """
        Return a snapshot of a run's state and stage result log.

        Raises:
            NotFoundError: If the run is unknown
        """
        with self._lock:
            active = self._active.get(run_id)
            if active is not None:
                return active.run.model_copy(deep=True)
        return self._store.require_run(run_id)

    def wait(self, run_id: str, timeout: float | None = None) -> Run:
        """Block until a run is terminal (or timeout) and return its state."""
        with self._lock:
            active = self._active.get(run_id)
        if active is not None:
            active.done.wait(timeout)
        return self.get_status(run_id)

    def list_runs(
        self,
        definition_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[Run]:
        """List recent runs, newest first."""
        return self._store.list_runs(definition_id=definition_id, status=status, limit=limit)

    def active_runs(self) -> list[str]:
        with self._lock:
            return list(self._active)

    # Execution

    def _execute(self, active: _ActiveRun) -> None:
        run = active.run
        token = active.token
        try:
            with self._lock:
                if run.is_terminal:
                    return
                run.status = RunStatus.RUNNING
                run.started_at = run.started_at or utc_now()
                self._commit(run)

            while True:
                with self._lock:
                    if token.cancelled:
                        self._finish(run, RunStatus.ABORTED, aborted_by=active.aborted_by)
                        return
                    index = run.next_stage_index
                    if index >= len(run.stages):
                        self._finish(run, RunStatus.SUCCEEDED)
                        return
                    stage = run.stages[index]
                    outputs = run.outputs()

                logger.info(
                    f"[{run.run_id}] Stage {index + 1}/{len(run.stages)}: "
                    f"{stage.name} ({stage.kind.value})"
                )
                if stage.kind == StageKind.APPROVAL:
                    result = self._await_approval(active, stage)
                else:
                    context = StageContext(
                        run_id=run.run_id,
                        stage_name=stage.name,
                        cancel_token=token,
                        outputs=outputs,
                        parameters=dict(run.parameters),
                        service_identity=run.service_identity,
                    )
                    result = self._executor.run(stage, context)

                with self._lock:
                    run.results.append(result)
                    self._record(
                        AuditEventType.STAGE_FINISHED,
                        f"Stage {stage.name} {result.outcome.value}",
                        run,
                        result=AuditResult.SUCCESS if result.is_success() else AuditResult.FAILURE,
                        stage=stage.name,
                        attempts=result.attempts,
                    )

                    if result.outcome == StageOutcome.ABORTED:
                        self._finish(run, RunStatus.ABORTED, aborted_by=active.aborted_by)
                        return
                    if not result.is_success():
                        run.failed_stage = stage.name
                        run.error_kind = result.error_kind
                        run.error_message = result.error_message
                        self._finish(run, RunStatus.FAILED)
                        return
                    self._commit(run)

        except Exception as e:
            logger.exception(f"[{run.run_id}] Engine error: {e}")
            with self._lock:
                if not run.is_terminal:
                    run.error_kind = ErrorKind.ACTION_FAILED
                    run.error_message = f"Engine error: {e}"
                    self._finish(run, RunStatus.FAILED)
        finally:
            with self._lock:
                self._active.pop(run.run_id, None)
            active.done.set()

    def _finish(self, run: Run, status: RunStatus, aborted_by: str | None = None) -> None:
        """Move a run to a terminal state. Callers hold the engine lock."""
        run.status = status
        run.finished_at = utc_now()
        if status == RunStatus.ABORTED:
            run.aborted_by = aborted_by or "operator"
            run.error_kind = ErrorKind.ABORTED
            run.error_message = f"Aborted by {run.aborted_by or 'operator'}"
        self._commit(run)

        if status == RunStatus.SUCCEEDED:
            logger.info(f"[{run.run_id}] Run succeeded")
        elif status == RunStatus.ABORTED:
            logger.info(f"[{run.run_id}] Run aborted by {run.aborted_by}")
        else:
            logger.error(
                f"[{run.run_id}] Run failed at '{run.failed_stage}' "
                f"({run.error_kind.value if run.error_kind else 'unknown'}): {run.error_message}"
            )

        self._record(
            AuditEventType.RUN_ABORTED if status == RunStatus.ABORTED else AuditEventType.RUN_FINISHED,
            f"Run {status.value}",
            run,
            actor=run.aborted_by or "system",
            result=AuditResult.SUCCESS if status == RunStatus.SUCCEEDED else AuditResult.FAILURE,
            severity=AuditLevel.INFO if status == RunStatus.SUCCEEDED else AuditLevel.WARNING,
            error_message=run.error_message,
            failed_stage=run.failed_stage,
        )

    def _await_approval(self, active: _ActiveRun, stage: StageSpec) -> StageResult:
        """Suspend the run at an approval gate and map the disposition to a result."""
        run = active.run
        started_at = utc_now()

        with self._lock:
            existing = next(
                (a for a in reversed(run.approvals) if a.stage_name == stage.name), None
            )
        if existing is not None:
            # Resumed after a restart: keep the original deadline
            existing = self._store.get_approval(existing.request_id) or existing
            request = self._gate.restore(existing)
            with self._lock:
                run.replace_approval(request)
        else:
            timeout = stage.timeout or self._settings.approval_timeout_seconds
            request = self._gate.open(run.run_id, stage.name, timeout, stage.environment)

        with self._lock:
            if not request.is_terminal:
                run.status = RunStatus.AWAITING_APPROVAL
                self._commit(run)

        try:
            request = self._gate.wait(request.request_id, active.token)
        except StageAbortedError as e:
            request = self._gate.withdraw(request.request_id, active.aborted_by or "operator")
            return StageResult(
                stage_name=stage.name,
                kind=stage.kind,
                outcome=StageOutcome.ABORTED,
                started_at=started_at,
                finished_at=utc_now(),
                error_kind=ErrorKind.ABORTED,
                error_message=str(e),
            )
        finally:
            self._gate.forget(request.request_id)
            with self._lock:
                run.replace_approval(request)
                if run.status == RunStatus.AWAITING_APPROVAL:
                    run.status = RunStatus.RUNNING

        data = {
            "request_id": request.request_id,
            "disposition": request.disposition.value,
            "decided_by": request.decided_by,
        }
        common = {
            "stage_name": stage.name,
            "kind": stage.kind,
            "started_at": started_at,
            "finished_at": utc_now(),
            "data": data,
        }

        if request.disposition == ApprovalDisposition.APPROVED:
            return StageResult(
                outcome=StageOutcome.SUCCEEDED,
                output=f"Approved by {request.decided_by}",
                **common,
            )
        if request.disposition == ApprovalDisposition.REJECTED:
            return StageResult(
                outcome=StageOutcome.REJECTED,
                output=request.comment or "",
                error_kind=ErrorKind.REJECTED,
                error_message=f"Rejected by {request.decided_by}",
                **common,
            )
        return StageResult(
            outcome=StageOutcome.TIMED_OUT,
            error_kind=ErrorKind.TIMED_OUT,
            error_message=f"No decision within {request.timeout_seconds}s",
            **common,
        )

    def _withdraw_pending(self, run: Run, actor: str) -> None:
        """Close open requests of a run that is not executing. Callers hold the engine lock."""
        for request in list(run.approvals):
            request = self._store.get_approval(request.request_id) or request
            if request.is_terminal:
                continue
            withdrawn = request.model_copy(
                update={
                    "disposition": ApprovalDisposition.WITHDRAWN,
                    "decided_by": actor,
                    "decided_at": utc_now(),
                }
            )
            self._store.save_approval(withdrawn)
            run.replace_approval(withdrawn)
            self._record(
                AuditEventType.APPROVAL_WITHDRAWN,
                f"Approval for {request.stage_name} withdrawn",
                run,
                actor=actor,
                result=AuditResult.FAILURE,
                severity=AuditLevel.WARNING,
            )

    def _on_approval_change(self, request: ApprovalRequest) -> None:
        """Persist a new or updated approval request and fold it into its run."""
        self._store.save_approval(request)
        with self._lock:
            active = self._active.get(request.run_id)
            run = active.run if active else self._store.get_run(request.run_id)
            if run is not None:
                run.replace_approval(request)
                self._commit(run)

    # Lifecycle

    def resume_incomplete(self) -> list[str]:
        """
        Restart runs a previous process left non-terminal.

        Each continues at its next unrecorded stage, so a stage that was in
        flight during the crash runs again (at-least-once).

        Returns:
            Ids of the resumed runs
        """
        resumed = []
        for run in self._store.incomplete_runs():
            with self._lock:
                if run.run_id in self._active:
                    continue
                active = _ActiveRun(run=run)
                self._active[run.run_id] = active

            if run.next_stage_index < len(run.stages):
                stage = run.stages[run.next_stage_index]
                if stage.kind == StageKind.APPROVAL:
                    logger.info(f"[{run.run_id}] Resuming at approval stage '{stage.name}'")
                elif run.status != RunStatus.PENDING:
                    logger.warning(
                        f"[{run.run_id}] Resuming: stage '{stage.name}' may execute again"
                    )
            self._record(
                AuditEventType.RUN_RESUMED,
                "Run resumed",
                run,
                next_stage=run.next_stage_index,
            )
            self._launch(active)
            resumed.append(run.run_id)
        return resumed

    def shutdown(self, timeout: float = 5.0) -> None:
        """Abort every active run and join the workers."""
        for run_id in self.active_runs():
            try:
                self.abort(run_id, actor="shutdown")
            except (ConflictError, NotFoundError):
                continue

        with self._lock:
            actives = list(self._active.values())
        for active in actives:
            if active.thread is not None:
                active.thread.join(timeout)


def build_engine(settings: PromoterSettings | None = None) -> PipelineEngine:
    """Wire an engine and its collaborators from settings."""
    settings = settings or get_settings()

    audit = AuditLogger(settings.audit_dir)
    policy = AccessPolicyStore(settings.policy_dir, audit)
    registry = ArtifactRegistry(
        settings.registry_dir,
        policy=policy,
        audit=audit,
        conflict_policy=settings.conflict_policy,
    )
    install_webhooks(registry, settings.deploy_webhooks)

    actions = default_catalog(registry)
    store = RunStore(settings.state_dir)
    catalog = PipelineCatalog(store, actions)
    loaded = catalog.load_directory(settings.pipelines_dir)
    if loaded:
        logger.info(f"Loaded {loaded} pipeline definition(s) from {settings.pipelines_dir}")

    return PipelineEngine(
        registry=registry,
        catalog=catalog,
        store=store,
        executor=StageExecutor(actions, default_timeout=settings.stage_timeout_seconds),
        gate=ApprovalGate(policy, audit),
        audit=audit,
        settings=settings,
    )
