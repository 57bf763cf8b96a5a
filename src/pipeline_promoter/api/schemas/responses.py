"""
Pydantic response schemas for API endpoints.

All API responses conform to these schemas for consistent output.
"""

from typing import Any

from pydantic import BaseModel, Field

from pipeline_promoter.core.models import (
    ApprovalRequest,
    ErrorKind,
    PipelineDefinition,
    Run,
    RunStatus,
    StageResult,
)


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str = Field(..., description="Health status")
    version: str = Field(..., description="API version")
    timestamp: str = Field(..., description="Check timestamp")
    components: dict[str, str] = Field(default_factory=dict, description="Component statuses")

    model_config = {"extra": "forbid"}


class PipelineSummary(BaseModel):
    """Pipeline definition summary for listings."""

    id: str
    version: str
    description: str
    stages: list[str]


class PipelineDetail(BaseModel):
    """Full pipeline definition with version history."""

    definition: PipelineDefinition
    version: str
    versions: list[str]


class PipelineListResponse(BaseModel):
    pipelines: list[PipelineSummary]
    total: int


class RunSummary(BaseModel):
    """Summary of a run for list views."""

    run_id: str
    definition_id: str
    definition_version: str
    status: RunStatus
    triggered_by: str
    created_at: str
    finished_at: str | None = None
    stages_completed: int
    stages_total: int
    failed_stage: str | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def from_run(cls, run: Run) -> "RunSummary":
        return cls(**run.to_summary())


class RunDetail(BaseModel):
    """Detailed run state including the stage result log."""

    run_id: str
    definition_id: str
    definition_version: str
    status: RunStatus
    triggered_by: str
    parameters: dict[str, Any]
    created_at: str
    started_at: str | None
    finished_at: str | None
    stages: list[str]
    results: list[StageResult]
    approvals: list[ApprovalRequest]
    pending_approval: ApprovalRequest | None = None
    failed_stage: str | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    aborted_by: str | None = None

    @classmethod
    def from_run(cls, run: Run) -> "RunDetail":
        return cls(
            run_id=run.run_id,
            definition_id=run.definition_id,
            definition_version=run.definition_version,
            status=run.status,
            triggered_by=run.triggered_by,
            parameters=run.parameters,
            created_at=run.created_at,
            started_at=run.started_at,
            finished_at=run.finished_at,
            stages=[s.name for s in run.stages],
            results=run.results,
            approvals=run.approvals,
            pending_approval=run.pending_approval(),
            failed_stage=run.failed_stage,
            error_kind=run.error_kind,
            error_message=run.error_message,
            aborted_by=run.aborted_by,
        )


class RunListResponse(BaseModel):
    """Response model for run list."""

    runs: list[RunSummary]
    total: int


class StartRunResponse(BaseModel):
    run_id: str
    status: RunStatus


class PromotionResponse(BaseModel):
    """Result of a direct promotion."""

    environment: str
    tag: str
    digest: str
    source: str


class TagListResponse(BaseModel):
    environment: str
    tags: dict[str, str]


class EnvironmentListResponse(BaseModel):
    environments: list[str]


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: dict[str, Any] = Field(..., description="Error details")

    model_config = {"extra": "forbid"}
