"""
Core data models for Pipeline Promoter.

Pipelines, runs, stage results, approvals and artifacts all use these
type-safe schemas. Records that are append-only once written are frozen.
"""

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class StageKind(str, Enum):
    """Kinds of pipeline stage."""

    BUILD = "build"
    DEPLOY = "deploy"
    TEST = "test"
    APPROVAL = "approval"
    PROMOTE = "promote"


class RunStatus(str, Enum):
    """Lifecycle of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED)


class StageOutcome(str, Enum):
    """Outcome recorded for an executed stage."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    ABORTED = "aborted"


class ErrorKind(str, Enum):
    """Error classes surfaced on failed stages and runs."""

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    CONFLICT = "conflict"
    TIMED_OUT = "timed_out"
    ALREADY_DECIDED = "already_decided"
    TRANSIENT = "transient"
    REJECTED = "rejected"
    ABORTED = "aborted"
    ACTION_FAILED = "action_failed"


class ApprovalDisposition(str, Enum):
    """Terminal disposition of an approval request."""

    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"


class Decision(str, Enum):
    """Decision an external actor can record at an approval gate."""

    APPROVE = "approve"
    REJECT = "reject"


class Permission(str, Enum):
    """Namespace-scoped permissions evaluated by the access policy."""

    READ = "read"
    DEPLOY = "deploy"
    PROMOTE = "promote"


class IdentityKind(str, Enum):
    """Kind of principal."""

    HUMAN = "human"
    SERVICE = "service"


SERVICE_ACCOUNT_PREFIX = "system:serviceaccount:"


class Identity(BaseModel):
    """A human or service principal."""

    name: str = Field(min_length=1)
    kind: IdentityKind = IdentityKind.HUMAN

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, name: str) -> "Identity":
        """Build an identity, recognising service account names."""
        if name.startswith(SERVICE_ACCOUNT_PREFIX):
            return cls(name=name, kind=IdentityKind.SERVICE)
        return cls(name=name)

    def __str__(self) -> str:
        return self.name


class RetryPolicy(BaseModel):
    """How often a stage action is retried on transient failure."""

    max_attempts: int = Field(default=1, ge=1)
    backoff_seconds: float = Field(default=0.0, ge=0)
    backoff_multiplier: float = Field(default=1.0, ge=1)

    model_config = {"frozen": True}


DEFAULT_ACTIONS = {
    StageKind.BUILD: "noop",
    StageKind.DEPLOY: "noop",
    StageKind.TEST: "noop",
    StageKind.PROMOTE: "promote",
}


class StageSpec(BaseModel):
    """A named unit of work in a pipeline definition."""

    name: str = Field(min_length=1)
    kind: StageKind
    action: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0, description="Seconds")
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    environment: str | None = Field(
        default=None, description="Environment gated by an approval stage"
    )

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _default_action(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("action"):
            kind = data.get("kind")
            try:
                kind = StageKind(kind)
            except ValueError:
                return data
            if kind in DEFAULT_ACTIONS:
                data = {**data, "action": DEFAULT_ACTIONS[kind]}
        return data

    @model_validator(mode="after")
    def _approval_has_no_action(self) -> "StageSpec":
        if self.kind == StageKind.APPROVAL and self.action:
            raise ValueError(f"Approval stage '{self.name}' cannot run an action")
        return self


class PipelineDefinition(BaseModel):
    """Ordered sequence of stages, identified by a content version."""

    id: str = Field(pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
    description: str = ""
    service_identity: str | None = None
    stages: list[StageSpec] = Field(min_length=1)

    model_config = {"frozen": True}

    @field_validator("stages")
    @classmethod
    def _unique_stage_names(cls, stages: list[StageSpec]) -> list[StageSpec]:
        seen: set[str] = set()
        for stage in stages:
            if stage.name in seen:
                raise ValueError(f"Duplicate stage name: {stage.name}")
            seen.add(stage.name)
        return stages

    @property
    def version(self) -> str:
        """Content version: hash of the canonical JSON form."""
        canonical = json.dumps(
            self.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        )
        return hashlib.sha256(canonical.encode()).hexdigest()[:12]


class Artifact(BaseModel):
    """An immutable digest and the tags pointing at it in one environment."""

    digest: str
    environment: str
    tags: list[str] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    created_at: str | None = None

    model_config = {"frozen": True}


class TagMove(BaseModel):
    """A tag rebinding inside an environment."""

    environment: str
    tag: str
    digest: str
    previous_digest: str | None = None
    source: str | None = Field(default=None, description="env:tag promoted from")
    actor: str = "system"
    moved_at: str = Field(default_factory=lambda: utc_now())

    model_config = {"frozen": True}

    @property
    def changed(self) -> bool:
        return self.digest != self.previous_digest


class StageResult(BaseModel):
    """Outcome of one executed stage. Append-only, never mutated."""

    stage_name: str
    kind: StageKind
    outcome: StageOutcome
    started_at: str
    finished_at: str
    attempts: int = 1
    output: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    error_kind: ErrorKind | None = None
    error_message: str | None = None

    model_config = {"frozen": True}

    def is_success(self) -> bool:
        """Return True if the stage succeeded."""
        return self.outcome == StageOutcome.SUCCEEDED

    @property
    def duration_ms(self) -> float:
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.finished_at)
        return (end - start).total_seconds() * 1000


class ApprovalRequest(BaseModel):
    """A pending or decided human approval for one gate instance."""

    request_id: str
    run_id: str
    stage_name: str
    environment: str | None = None
    created_at: str
    deadline: str
    timeout_seconds: float
    disposition: ApprovalDisposition | None = None
    decided_by: str | None = None
    decided_at: str | None = None
    comment: str | None = None

    model_config = {"frozen": True}

    @property
    def is_terminal(self) -> bool:
        return self.disposition is not None

    @property
    def deadline_timestamp(self) -> float:
        return datetime.fromisoformat(self.deadline).timestamp()


class Run(BaseModel):
    """One execution of a pipeline definition."""

    run_id: str
    definition_id: str
    definition_version: str
    stages: list[StageSpec]
    status: RunStatus = RunStatus.PENDING
    triggered_by: str = "system"
    service_identity: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(default_factory=lambda: utc_now())
    started_at: str | None = None
    finished_at: str | None = None
    results: list[StageResult] = Field(default_factory=list)
    approvals: list[ApprovalRequest] = Field(default_factory=list)
    failed_stage: str | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    aborted_by: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def next_stage_index(self) -> int:
        """Index of the first stage without a recorded result."""
        return len(self.results)

    def outputs(self) -> dict[str, dict[str, Any]]:
        """Structured outputs of completed stages, keyed by stage name."""
        return {r.stage_name: r.data for r in self.results}

    def pending_approval(self) -> ApprovalRequest | None:
        """Return the open approval request, if any. Terminal runs have none."""
        if self.is_terminal:
            return None
        for request in reversed(self.approvals):
            if not request.is_terminal:
                return request
        return None

    def replace_approval(self, request: ApprovalRequest) -> None:
        """Swap in the latest state of an approval request."""
        for i, existing in enumerate(self.approvals):
            if existing.request_id == request.request_id:
                self.approvals[i] = request
                return
        self.approvals.append(request)

    def to_summary(self) -> dict[str, Any]:
        """Convert to summary for listing."""
        return {
            "run_id": self.run_id,
            "definition_id": self.definition_id,
            "definition_version": self.definition_version,
            "status": self.status.value,
            "triggered_by": self.triggered_by,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "stages_completed": len(self.results),
            "stages_total": len(self.stages),
            "failed_stage": self.failed_stage,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


def utc_now() -> str:
    """Return current ISO8601 timestamp in UTC."""
    return datetime.now(timezone.utc).isoformat()
