"""
Environment endpoints.
"""

from fastapi import APIRouter, Depends

from pipeline_promoter.api.dependencies import get_engine
from pipeline_promoter.api.schemas.responses import EnvironmentListResponse, TagListResponse
from pipeline_promoter.orchestrator.core import PipelineEngine

router = APIRouter()


@router.get("", response_model=EnvironmentListResponse)
def list_environments(engine: PipelineEngine = Depends(get_engine)) -> EnvironmentListResponse:
    return EnvironmentListResponse(environments=engine.registry.list_environments())


@router.get("/{environment}/tags", response_model=TagListResponse)
def list_tags(environment: str, engine: PipelineEngine = Depends(get_engine)) -> TagListResponse:
    """Tag to digest bindings in an environment."""
    return TagListResponse(environment=environment, tags=engine.registry.list_tags(environment))
