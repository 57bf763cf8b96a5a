"""
Stage Executor - runs one stage action with timeout, retry and cancellation.

Each attempt runs on a daemon worker thread with its own cancellation token,
a child of the run's token. On timeout the attempt token is tripped and the
worker is abandoned, never joined.
"""

import logging
import threading
import time
from dataclasses import replace
from typing import Any

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pipeline_promoter.core.exceptions import (
    StageAbortedError,
    StageTimeoutError,
    TransientError,
    error_kind_for,
    format_exception,
)
from pipeline_promoter.core.models import (
    StageKind,
    StageOutcome,
    StageResult,
    StageSpec,
    utc_now,
)
from pipeline_promoter.stages.actions import ActionCatalog, ActionOutput, StageAction
from pipeline_promoter.stages.context import StageContext

logger = logging.getLogger(__name__)


class StageExecutor:
    """
    Executes stage actions.

    The executor does not know about runs or approvals; the engine hands it
    one non-approval stage at a time and records the returned result.
    """

    def __init__(self, actions: ActionCatalog, default_timeout: float | None = None):
        """
        Initialize the executor.

        Args:
            actions: Catalog that resolves stage action names
            default_timeout: Timeout in seconds for stages that set none
        """
        self._actions = actions
        self._default_timeout = default_timeout

    @property
    def actions(self) -> ActionCatalog:
        return self._actions

    def run(self, stage: StageSpec, context: StageContext) -> StageResult:
        """
        Run a stage to completion and describe the outcome.

        Never raises for action failures; they are folded into the result.
        Only TransientError is retried, up to stage.retry.max_attempts.
        """
        if stage.kind == StageKind.APPROVAL:
            raise ValueError(f"Approval stage '{stage.name}' is resolved by the approval gate")

        started_at = utc_now()
        attempts = 0

        try:
            action = self._actions.get(stage.action or "")
            timeout = stage.timeout or self._default_timeout

            retrying = Retrying(
                stop=stop_after_attempt(stage.retry.max_attempts),
                wait=wait_exponential(
                    multiplier=stage.retry.backoff_seconds,
                    exp_base=stage.retry.backoff_multiplier,
                ),
                retry=retry_if_exception_type(TransientError),
                # Backoff sleeps wake up on abort
                sleep=context.cancel_token.wait,
                before_sleep=self._log_retry(context, stage),
                reraise=True,
            )
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = self._run_attempt(
                        action, stage, replace(context, attempt=attempts), timeout
                    )
        except Exception as e:
            return self._failure(stage, started_at, max(attempts, 1), e)

        logger.info(f"[{context.run_id}] Stage '{stage.name}' succeeded after {attempts} attempt(s)")
        return StageResult(
            stage_name=stage.name,
            kind=stage.kind,
            outcome=StageOutcome.SUCCEEDED,
            started_at=started_at,
            finished_at=utc_now(),
            attempts=attempts,
            output=result.output,
            data=result.data,
        )

    def _run_attempt(
        self,
        action: StageAction,
        stage: StageSpec,
        context: StageContext,
        timeout: float | None,
    ) -> ActionOutput:
        """Run a single attempt, enforcing timeout and cancellation."""
        context.check_cancelled()

        token = context.cancel_token.child()
        attempt_context = replace(context, cancel_token=token)

        try:
            if not getattr(action, "interruptible", True):
                # Runs to completion; abort applies before or after, never during
                return action(stage, attempt_context)
            return self._run_interruptible(action, stage, attempt_context, timeout)
        finally:
            token.detach()

    def _run_interruptible(
        self,
        action: StageAction,
        stage: StageSpec,
        context: StageContext,
        timeout: float | None,
    ) -> ActionOutput:
        outcome: dict[str, Any] = {}
        finished = threading.Event()
        wake = threading.Event()

        def target() -> None:
            try:
                outcome["output"] = action(stage, context)
            except Exception as e:
                outcome["error"] = e
            finally:
                finished.set()
                wake.set()

        unregister = context.cancel_token.add_callback(wake.set)
        worker = threading.Thread(
            target=target,
            name=f"stage-{context.run_id}-{stage.name}-{context.attempt}",
            daemon=True,
        )
        worker.start()

        deadline = time.monotonic() + timeout if timeout else None
        try:
            while not wake.is_set():
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    break
                wake.wait(remaining)
        finally:
            unregister()

        if finished.is_set():
            if "error" in outcome:
                raise outcome["error"]
            return outcome.get("output") or ActionOutput()

        if context.cancel_token.cancelled:
            raise StageAbortedError(
                f"Stage '{stage.name}' aborted: {context.cancel_token.reason}"
            )

        context.cancel_token.cancel("timed out")
        logger.warning(
            f"[{context.run_id}] Stage '{stage.name}' exceeded {timeout}s; abandoning worker"
        )
        raise StageTimeoutError(
            f"Stage '{stage.name}' timed out after {timeout}s",
            stage_name=stage.name,
            timeout_seconds=timeout,
        )

    def _failure(
        self,
        stage: StageSpec,
        started_at: str,
        attempts: int,
        error: Exception,
    ) -> StageResult:
        if isinstance(error, StageTimeoutError):
            outcome = StageOutcome.TIMED_OUT
        elif isinstance(error, StageAbortedError):
            outcome = StageOutcome.ABORTED
        else:
            outcome = StageOutcome.FAILED

        message = format_exception(error)
        if outcome == StageOutcome.ABORTED:
            logger.info(f"Stage '{stage.name}' aborted: {message}")
        else:
            logger.error(f"Stage '{stage.name}' {outcome.value}: {message}")

        return StageResult(
            stage_name=stage.name,
            kind=stage.kind,
            outcome=outcome,
            started_at=started_at,
            finished_at=utc_now(),
            attempts=attempts,
            output=getattr(error, "output", None) or "",
            data=getattr(error, "details", {}) or {},
            error_kind=error_kind_for(error),
            error_message=message,
        )

    @staticmethod
    def _log_retry(context: StageContext, stage: StageSpec):
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            wait = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                f"[{context.run_id}] Stage '{stage.name}' attempt "
                f"{retry_state.attempt_number}/{stage.retry.max_attempts} failed "
                f"({error}); retrying in {wait:.2f}s"
            )

        return before_sleep
