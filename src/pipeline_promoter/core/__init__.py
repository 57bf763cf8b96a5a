"""
Pipeline Promoter Core Module.

Provides foundational types and the exception hierarchy.
"""

__all__ = [
    "ApprovalDisposition",
    "ApprovalRequest",
    "Artifact",
    "Decision",
    "ErrorKind",
    "Identity",
    "Permission",
    "PipelineDefinition",
    "RetryPolicy",
    "Run",
    "RunStatus",
    "StageKind",
    "StageOutcome",
    "StageResult",
    "StageSpec",
    "TagMove",
    # Exceptions
    "PromoterError",
    "NotFoundError",
    "PermissionDeniedError",
    "ConflictError",
    "AlreadyDecidedError",
    "StageTimeoutError",
    "TransientError",
    "StageAbortedError",
    "ActionError",
    "PipelineDefinitionError",
    "ConfigurationError",
]

from pipeline_promoter.core.exceptions import (
    ActionError,
    AlreadyDecidedError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PipelineDefinitionError,
    PromoterError,
    StageAbortedError,
    StageTimeoutError,
    TransientError,
)
from pipeline_promoter.core.models import (
    ApprovalDisposition,
    ApprovalRequest,
    Artifact,
    Decision,
    ErrorKind,
    Identity,
    Permission,
    PipelineDefinition,
    RetryPolicy,
    Run,
    RunStatus,
    StageKind,
    StageOutcome,
    StageResult,
    StageSpec,
    TagMove,
)
