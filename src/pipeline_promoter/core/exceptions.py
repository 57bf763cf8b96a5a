"""
Pipeline Promoter Exception Hierarchy.

Defines all custom exceptions used across the promotion system.
Provides consistent error handling and debugging information.
"""

from typing import Any

from pipeline_promoter.core.models import ErrorKind


class PromoterError(Exception):
    """
    Base exception for all Pipeline Promoter errors.

    All custom exceptions inherit from this class, allowing
    generic catch blocks and consistent error handling.
    """

    kind: ErrorKind = ErrorKind.ACTION_FAILED

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        """
        Initialize a PromoterError.

        Args:
            message: Human-readable error message
            details: Optional structured data for debugging
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation with details."""
        base = self.message
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{base} ({details_str})"
        return base

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(PromoterError):
    """
    Raised when a tag, environment, run, definition or approval request
    does not exist.
    """

    kind = ErrorKind.NOT_FOUND

    def __init__(
        self,
        message: str = "Entity not found",
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if entity_type:
            details["entity_type"] = entity_type
        if entity_id:
            details["entity_id"] = entity_id

        super().__init__(message, details=details)
        self.entity_type = entity_type
        self.entity_id = entity_id


class PermissionDeniedError(PromoterError):
    """
    Raised when the access policy denies an identity an action.

    Denial is a hard stop: callers never retry or downgrade it.
    """

    kind = ErrorKind.PERMISSION_DENIED

    def __init__(
        self,
        message: str,
        *,
        identity: str | None = None,
        action: str | None = None,
        environment: str | None = None,
    ):
        details: dict[str, Any] = {}
        if identity:
            details["identity"] = identity
        if action:
            details["action"] = action
        if environment:
            details["environment"] = environment

        super().__init__(message, details=details)
        self.identity = identity
        self.action = action
        self.environment = environment


class ConflictError(PromoterError):
    """
    Raised on concurrent write contention or an illegal state transition.

    The registry raises this when another promotion to the same
    destination tag is in flight.
    """

    kind = ErrorKind.CONFLICT

    def __init__(
        self,
        message: str,
        *,
        resource: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if resource:
            details["resource"] = resource

        super().__init__(message, details=details)
        self.resource = resource


class AlreadyDecidedError(ConflictError):
    """Raised when a decision is recorded against a terminal approval request."""

    kind = ErrorKind.ALREADY_DECIDED

    def __init__(
        self,
        message: str = "Approval request already decided",
        *,
        request_id: str | None = None,
        disposition: str | None = None,
    ):
        details: dict[str, Any] = {}
        if disposition:
            details["disposition"] = disposition
        super().__init__(message, resource=request_id, details=details)
        self.request_id = request_id
        self.disposition = disposition


class StageTimeoutError(PromoterError):
    """Raised when a stage action or approval outlives its deadline."""

    kind = ErrorKind.TIMED_OUT

    def __init__(
        self,
        message: str,
        *,
        stage_name: str | None = None,
        timeout_seconds: float | None = None,
    ):
        details: dict[str, Any] = {}
        if stage_name:
            details["stage"] = stage_name
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds

        super().__init__(message, details=details)
        self.stage_name = stage_name
        self.timeout_seconds = timeout_seconds


class TransientError(PromoterError):
    """
    Retryable action failure.

    Raised by stage actions for network errors, server-side 5xx responses
    and other failures expected to clear on their own.
    """

    kind = ErrorKind.TRANSIENT


class StageAbortedError(PromoterError):
    """Raised inside an action when its run has been aborted."""

    kind = ErrorKind.ABORTED


class ActionError(PromoterError):
    """Non-retryable failure reported by a stage action."""

    kind = ErrorKind.ACTION_FAILED

    def __init__(
        self,
        message: str,
        *,
        action: str | None = None,
        output: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if action:
            details["action"] = action

        super().__init__(message, details=details)
        self.action = action
        self.output = output


class PipelineDefinitionError(PromoterError):
    """
    Errors in pipeline definition loading or validation.

    Raised when:
    - Definition files are missing or malformed
    - Stage names are duplicated
    - A stage references an unknown action
    """

    def __init__(
        self,
        message: str,
        *,
        definition_id: str | None = None,
        source: str | None = None,
        validation_errors: list[str] | None = None,
    ):
        details: dict[str, Any] = {}
        if definition_id:
            details["definition_id"] = definition_id
        if source:
            details["source"] = source
        if validation_errors:
            details["validation_errors"] = validation_errors

        super().__init__(message, details=details)
        self.definition_id = definition_id
        self.source = source
        self.validation_errors = validation_errors or []


class ConfigurationError(PromoterError):
    """
    Errors in configuration loading or validation.

    Raised when environment variables hold invalid values.
    """

    def __init__(
        self,
        message: str,
        *,
        env_var: str | None = None,
        value: str | None = None,
    ):
        details: dict[str, Any] = {}
        if env_var:
            details["env_var"] = env_var
        if value is not None:
            details["value"] = value

        super().__init__(message, details=details)
        self.env_var = env_var
        self.value = value


def format_exception(error: Exception) -> str:
    """
    Format an exception for user-friendly display.

    Args:
        error: The exception to format

    Returns:
        Formatted error message string
    """
    if isinstance(error, PromoterError):
        return str(error)
    return f"{error.__class__.__name__}: {error}"


def error_kind_for(error: Exception) -> ErrorKind:
    """Map an exception to the error kind recorded on stage results."""
    if isinstance(error, PromoterError):
        return error.kind
    return ErrorKind.ACTION_FAILED


def is_retriable_error(error: Exception) -> bool:
    """
    Determine if an error is suitable for retry.

    Only transient failures are retried; permission denials, rejections,
    timeouts and everything else fail the stage immediately.
    """
    return isinstance(error, TransientError)
