"""Tests for the exception hierarchy."""

from pipeline_promoter.core.exceptions import (
    ActionError,
    AlreadyDecidedError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PromoterError,
    StageTimeoutError,
    TransientError,
    error_kind_for,
    format_exception,
    is_retriable_error,
)
from pipeline_promoter.core.models import ErrorKind


class TestPromoterError:
    """Tests for the base error."""

    def test_str_includes_details(self) -> None:
        """Details are appended to the message."""
        error = PromoterError("boom", details={"stage": "build"})
        assert str(error) == "boom (stage=build)"

    def test_to_dict(self) -> None:
        """Errors serialize with their kind."""
        error = NotFoundError("missing", entity_type="run", entity_id="run_1")
        data = error.to_dict()
        assert data["error_type"] == "NotFoundError"
        assert data["kind"] == "not_found"
        assert data["details"] == {"entity_type": "run", "entity_id": "run_1"}


class TestErrorKinds:
    """Tests for error kind mapping."""

    def test_kinds(self) -> None:
        """Each error class carries its kind."""
        assert error_kind_for(NotFoundError()) == ErrorKind.NOT_FOUND
        assert error_kind_for(PermissionDeniedError("no")) == ErrorKind.PERMISSION_DENIED
        assert error_kind_for(ConflictError("busy")) == ErrorKind.CONFLICT
        assert error_kind_for(AlreadyDecidedError()) == ErrorKind.ALREADY_DECIDED
        assert error_kind_for(StageTimeoutError("slow")) == ErrorKind.TIMED_OUT
        assert error_kind_for(TransientError("flaky")) == ErrorKind.TRANSIENT
        assert error_kind_for(RuntimeError("other")) == ErrorKind.ACTION_FAILED

    def test_already_decided_is_a_conflict(self) -> None:
        """Callers catching conflicts also see double decisions."""
        error = AlreadyDecidedError(request_id="apr_1", disposition="approved")
        assert isinstance(error, ConflictError)
        assert error.details == {"disposition": "approved", "resource": "apr_1"}

    def test_only_transient_is_retriable(self) -> None:
        """Permission denials and action failures are never retried."""
        assert is_retriable_error(TransientError("flaky"))
        assert not is_retriable_error(PermissionDeniedError("no"))
        assert not is_retriable_error(ActionError("bad"))
        assert not is_retriable_error(StageTimeoutError("slow"))

    def test_format_foreign_exception(self) -> None:
        """Non-promoter errors are prefixed with their class name."""
        assert format_exception(ValueError("bad value")) == "ValueError: bad value"
