"""
Pydantic request schemas for API endpoints.

All incoming API requests are validated against these schemas.
"""

from typing import Any

from pydantic import BaseModel, Field

from pipeline_promoter.core.models import Decision


class StartRunRequest(BaseModel):
    """Request to start a pipeline run."""

    pipeline_id: str = Field(..., min_length=1, description="Pipeline definition id")
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        description="Run parameters substituted into stage params",
        examples=[{"tag": "v1.4.2"}],
    )


class DecisionRequest(BaseModel):
    """Approval callback body."""

    decision: Decision = Field(..., description="approve or reject")
    comment: str | None = Field(None, max_length=2000)


class AbortRequest(BaseModel):
    """Optional body for aborting a run."""

    reason: str | None = Field(None, max_length=500)


class PromoteRequest(BaseModel):
    """Request to promote an artifact between environments."""

    source_env: str = Field(..., min_length=1, examples=["dev"])
    tag: str = Field(..., min_length=1, examples=["latest"])
    dest_env: str = Field(..., min_length=1, examples=["prod"])
    dest_tag: str | None = Field(None, description="Defaults to the source tag")
