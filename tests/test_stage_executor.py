"""Tests for the stage executor."""

import threading
import time
from typing import Any

import pytest

from pipeline_promoter.core.exceptions import ActionError, PermissionDeniedError, TransientError
from pipeline_promoter.core.models import (
    ErrorKind,
    RetryPolicy,
    StageKind,
    StageOutcome,
    StageSpec,
)
from pipeline_promoter.stages import (
    ActionCatalog,
    ActionOutput,
    CancelToken,
    NoopAction,
    StageContext,
    StageExecutor,
)


class FlakyAction:
    """Fails with a given error a number of times, then succeeds."""

    interruptible = True

    def __init__(self, failures: int, error: Exception | None = None):
        self.failures = failures
        self.error = error or TransientError("registry unavailable")
        self.calls = 0
        self.attempts_seen: list[int] = []

    def __call__(self, stage: StageSpec, context: StageContext) -> ActionOutput:
        self.calls += 1
        self.attempts_seen.append(context.attempt)
        if self.calls <= self.failures:
            raise self.error
        return ActionOutput(output="ok", data={"calls": self.calls})


class BlockingAction:
    """Blocks until released, ignoring cancellation."""

    def __init__(self, interruptible: bool = True):
        self.interruptible = interruptible
        self.started = threading.Event()
        self.release = threading.Event()
        self.finished = threading.Event()

    def __call__(self, stage: StageSpec, context: StageContext) -> ActionOutput:
        self.started.set()
        self.release.wait(5)
        self.finished.set()
        return ActionOutput(output="done")


def _executor(**actions: Any) -> StageExecutor:
    catalog = ActionCatalog()
    catalog.register("noop", NoopAction())
    for name, action in actions.items():
        catalog.register(name, action)
    return StageExecutor(catalog)


def _stage(action: str = "noop", **kwargs: Any) -> StageSpec:
    return StageSpec(name="build", kind=StageKind.BUILD, action=action, **kwargs)


def _context(token: CancelToken | None = None) -> StageContext:
    return StageContext(run_id="run_test", stage_name="build", cancel_token=token or CancelToken())


class TestStageExecutor:
    """Tests for StageExecutor.run."""

    def test_success(self) -> None:
        """A succeeding action produces a succeeded result."""
        result = _executor().run(_stage(params={"target": "web"}), _context())

        assert result.outcome == StageOutcome.SUCCEEDED
        assert result.attempts == 1
        assert result.data == {"target": "web"}
        assert result.error_kind is None

    def test_approval_stage_refused(self) -> None:
        """Approval stages belong to the gate."""
        stage = StageSpec(name="approve", kind=StageKind.APPROVAL)
        with pytest.raises(ValueError):
            _executor().run(stage, _context())

    def test_unknown_action_fails_stage(self) -> None:
        """A missing action is reported as a not-found failure."""
        result = _executor().run(_stage("deploy-k8s"), _context())
        assert result.outcome == StageOutcome.FAILED
        assert result.error_kind == ErrorKind.NOT_FOUND

    def test_transient_failure_retried(self) -> None:
        """Transient errors are retried up to max_attempts."""
        action = FlakyAction(failures=2)
        stage = _stage("flaky", retry=RetryPolicy(max_attempts=3, backoff_seconds=0.01))

        result = _executor(flaky=action).run(stage, _context())

        assert result.outcome == StageOutcome.SUCCEEDED
        assert result.attempts == 3
        assert action.attempts_seen == [1, 2, 3]

    def test_retries_exhausted(self) -> None:
        """The last transient error fails the stage."""
        action = FlakyAction(failures=5)
        stage = _stage("flaky", retry=RetryPolicy(max_attempts=2))

        result = _executor(flaky=action).run(stage, _context())

        assert result.outcome == StageOutcome.FAILED
        assert result.attempts == 2
        assert result.error_kind == ErrorKind.TRANSIENT
        assert action.calls == 2

    @pytest.mark.parametrize(
        "error,kind",
        [
            (ActionError("bad manifest", output="line 3: invalid"), ErrorKind.ACTION_FAILED),
            (PermissionDeniedError("denied"), ErrorKind.PERMISSION_DENIED),
        ],
    )
    def test_non_transient_not_retried(self, error: Exception, kind: ErrorKind) -> None:
        """Only transient failures are retried."""
        action = FlakyAction(failures=5, error=error)
        stage = _stage("flaky", retry=RetryPolicy(max_attempts=3))

        result = _executor(flaky=action).run(stage, _context())

        assert result.outcome == StageOutcome.FAILED
        assert result.error_kind == kind
        assert action.calls == 1

    def test_failure_output_kept(self) -> None:
        """Action output attached to the error lands on the result."""
        action = FlakyAction(failures=1, error=ActionError("bad", output="line 3: invalid"))
        result = _executor(flaky=action).run(_stage("flaky"), _context())
        assert result.output == "line 3: invalid"

    def test_timeout(self) -> None:
        """An attempt outliving its timeout is abandoned."""
        action = BlockingAction()
        stage = _stage("block", timeout=0.2)

        started = time.monotonic()
        result = _executor(block=action).run(stage, _context())

        assert result.outcome == StageOutcome.TIMED_OUT
        assert result.error_kind == ErrorKind.TIMED_OUT
        assert time.monotonic() - started < 2
        action.release.set()

    def test_timeout_is_not_retried(self) -> None:
        """Timeouts fail the stage even with retries configured."""
        action = BlockingAction()
        stage = _stage("block", timeout=0.1, retry=RetryPolicy(max_attempts=3))

        result = _executor(block=action).run(stage, _context())

        assert result.outcome == StageOutcome.TIMED_OUT
        assert result.attempts == 1
        action.release.set()

    def test_cancel_while_running(self) -> None:
        """Cancelling the run token aborts an interruptible action."""
        action = BlockingAction()
        token = CancelToken()
        threading.Timer(0.1, token.cancel, args=("aborted by ops",)).start()

        result = _executor(block=action).run(_stage("block"), _context(token))

        assert result.outcome == StageOutcome.ABORTED
        assert result.error_kind == ErrorKind.ABORTED
        action.release.set()

    def test_cancelled_before_start(self) -> None:
        """A cancelled token prevents the action from running."""
        action = FlakyAction(failures=0)
        token = CancelToken()
        token.cancel("aborted")

        result = _executor(flaky=action).run(_stage("flaky"), _context(token))

        assert result.outcome == StageOutcome.ABORTED
        assert action.calls == 0

    def test_cancel_during_backoff(self) -> None:
        """Abort wakes a retry backoff instead of sleeping it out."""
        action = FlakyAction(failures=5)
        token = CancelToken()
        stage = _stage("flaky", retry=RetryPolicy(max_attempts=3, backoff_seconds=30))
        threading.Timer(0.1, token.cancel, args=("aborted",)).start()

        started = time.monotonic()
        result = _executor(flaky=action).run(stage, _context(token))

        assert result.outcome == StageOutcome.ABORTED
        assert action.calls == 1
        assert time.monotonic() - started < 5

    def test_non_interruptible_runs_to_completion(self) -> None:
        """Cancellation waits for a non-interruptible action to finish."""
        action = BlockingAction(interruptible=False)
        token = CancelToken()

        def cancel_then_release() -> None:
            action.started.wait(2)
            token.cancel("aborted")
            time.sleep(0.1)
            action.release.set()

        threading.Thread(target=cancel_then_release, daemon=True).start()
        result = _executor(block=action).run(_stage("block"), _context(token))

        assert action.finished.is_set()
        assert result.outcome == StageOutcome.SUCCEEDED

    def test_attempt_token_does_not_cancel_run(self) -> None:
        """A timed out attempt leaves the run token untouched."""
        action = BlockingAction()
        token = CancelToken()

        _executor(block=action).run(_stage("block", timeout=0.1), _context(token))

        assert not token.cancelled
        action.release.set()
