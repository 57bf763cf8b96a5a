"""
Execution context handed to stage actions.

Carries the run identity, outputs of earlier stages, and the cancellation
token actions check in with.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from pipeline_promoter.core.exceptions import StageAbortedError


class CancelToken:
    """
    One-shot cancellation signal.

    Callbacks registered before or after cancellation run exactly once.
    Child tokens are cancelled with their parent but can also be cancelled
    on their own (a stage timeout cancels only the attempt).
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None
        self._detach: Callable[[], None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Trip the token and run callbacks outside the lock."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Run callback on cancellation.

        Returns a function that unregisters it.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._discard(callback)
        callback()
        return lambda: None

    def _discard(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep until cancelled or timeout; True if cancelled."""
        return self._event.wait(timeout)

    def child(self) -> "CancelToken":
        """A token cancelled whenever this one is."""
        child = CancelToken()
        child._detach = self.add_callback(lambda: child.cancel(self.reason or "cancelled"))
        return child

    def detach(self) -> None:
        """Stop following the parent token."""
        if self._detach:
            self._detach()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise StageAbortedError(f"Cancelled: {self.reason}")


@dataclass
class StageContext:
    """Context passed to a stage action."""

    run_id: str
    stage_name: str
    cancel_token: CancelToken = field(default_factory=CancelToken)
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)
    service_identity: str | None = None
    attempt: int = 1

    def check_cancelled(self) -> None:
        """Cooperative check-in point for long-running actions."""
        self.cancel_token.raise_if_cancelled()

    def output_of(self, stage_name: str) -> dict[str, Any]:
        """Structured output of an earlier stage (empty if it produced none)."""
        return self.outputs.get(stage_name, {})
