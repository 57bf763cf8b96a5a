"""
Exception classes for API error handling.
"""

from typing import Any

from pipeline_promoter.core.exceptions import (
    ConfigurationError,
    PipelineDefinitionError,
    PromoterError,
)
from pipeline_promoter.core.models import ErrorKind


class APIException(Exception):
    """
    Base exception for API errors.

    All API exceptions should inherit from this class to ensure
    consistent error response formatting.
    """

    status_code: int = 500
    error_type: str = "api_error"
    message: str = "An error occurred"
    detail: Any = None

    def __init__(
        self,
        message: str | None = None,
        detail: Any = None,
        status_code: int | None = None,
    ) -> None:
        self.message = message or self.message
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class BadRequestError(APIException):
    """Exception raised when a request is malformed or incomplete."""

    status_code = 400
    error_type = "bad_request"
    message = "Bad request"


class MissingIdentityError(BadRequestError):
    """Exception raised when the acting identity header is absent."""

    error_type = "missing_identity"
    message = "X-Identity header is required"


STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.ALREADY_DECIDED: 409,
    ErrorKind.TIMED_OUT: 504,
    ErrorKind.TRANSIENT: 503,
}


def status_for(error: PromoterError) -> tuple[int, str]:
    """HTTP status code and error type for a domain error."""
    if isinstance(error, PipelineDefinitionError):
        return 400, "invalid_definition"
    if isinstance(error, ConfigurationError):
        return 400, "invalid_configuration"
    return STATUS_BY_KIND.get(error.kind, 500), error.kind.value
