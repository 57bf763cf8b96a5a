"""
Audit data models for Pipeline Promoter.

Defines the audit event record written for every run transition,
approval decision, tag move and policy change.
"""

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AuditLevel(str, Enum):
    """Audit log severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEventType(str, Enum):
    """Standard audit event types."""

    # Run events
    RUN_STARTED = "run_started"
    RUN_FINISHED = "run_finished"
    RUN_ABORTED = "run_aborted"
    RUN_RESUMED = "run_resumed"
    STAGE_FINISHED = "stage_finished"

    # Approval events
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_DECIDED = "approval_decided"
    APPROVAL_EXPIRED = "approval_expired"
    APPROVAL_WITHDRAWN = "approval_withdrawn"

    # Registry events
    ENVIRONMENT_CREATED = "environment_created"
    ARTIFACT_PUSHED = "artifact_pushed"
    TAG_MOVED = "tag_moved"
    DEPLOYMENT_TRIGGERED = "deployment_triggered"
    DEPLOYMENT_TRIGGER_FAILED = "deployment_trigger_failed"

    # Policy events
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_REVOKED = "permission_revoked"
    PERMISSION_DENIED = "permission_denied"


class AuditResult(str, Enum):
    """Result status of audited operations."""

    SUCCESS = "success"
    FAILURE = "failure"
    UNKNOWN = "unknown"


def _utc_now() -> str:
    """Return current UTC timestamp as ISO8601 string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _event_id() -> str:
    return f"evt_{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S%f')}"


class AuditEvent(BaseModel):
    """
    A single audit log entry.

    Immutable record of a system event for compliance and forensics.
    """

    event_id: str = Field(default_factory=_event_id)
    timestamp: str = Field(default_factory=_utc_now)
    event_type: AuditEventType = Field(description="Type of event being logged")

    actor: str = Field(default="system", description="Identity that performed the action")
    action: str = Field(description="Human-readable description of the action")
    target: str | None = Field(default=None, description="Resource affected, e.g. prod:frontend")

    result: AuditResult = Field(default=AuditResult.UNKNOWN)
    severity: AuditLevel = Field(default=AuditLevel.INFO)

    metadata: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None

    run_id: str | None = Field(default=None, description="Associated run identifier")

    checksum: str | None = Field(default=None, description="SHA256 hash for integrity verification")

    model_config = {"frozen": True}

    def compute_checksum(self) -> str:
        """Compute SHA256 checksum of event data for integrity verification."""
        data = {
            "event_id": self.event_id,
            "timestamp": self.timestamp,
            "event_type": self.event_type.value,
            "actor": self.actor,
            "action": self.action,
            "target": self.target,
            "result": self.result.value,
            "metadata": self.metadata,
            "run_id": self.run_id,
        }
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()

    def with_checksum(self) -> "AuditEvent":
        """Return a new event with checksum computed."""
        return self.model_copy(update={"checksum": self.compute_checksum()})

    def verify(self) -> bool:
        """Check the stored checksum against the event content."""
        return self.checksum is not None and self.checksum == self.compute_checksum()

    def to_log_line(self) -> str:
        """Convert to JSONL string for file storage."""
        return self.with_checksum().model_dump_json(exclude_none=True)
