"""
Pydantic schemas for API request/response validation.

This module exports all request and response schemas used by the API.
"""

from pipeline_promoter.api.schemas.exceptions import (
    APIException,
    BadRequestError,
    MissingIdentityError,
    status_for,
)
from pipeline_promoter.api.schemas.requests import (
    AbortRequest,
    DecisionRequest,
    PromoteRequest,
    StartRunRequest,
)
from pipeline_promoter.api.schemas.responses import (
    EnvironmentListResponse,
    ErrorResponse,
    HealthResponse,
    PipelineDetail,
    PipelineListResponse,
    PipelineSummary,
    PromotionResponse,
    RunDetail,
    RunListResponse,
    RunSummary,
    StartRunResponse,
    TagListResponse,
)

__all__ = [
    # Exceptions
    "APIException",
    "BadRequestError",
    "MissingIdentityError",
    "status_for",
    # Requests
    "AbortRequest",
    "DecisionRequest",
    "PromoteRequest",
    "StartRunRequest",
    # Responses
    "EnvironmentListResponse",
    "ErrorResponse",
    "HealthResponse",
    "PipelineDetail",
    "PipelineListResponse",
    "PipelineSummary",
    "PromotionResponse",
    "RunDetail",
    "RunListResponse",
    "RunSummary",
    "StartRunResponse",
    "TagListResponse",
]
