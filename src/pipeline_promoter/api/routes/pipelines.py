"""
Pipeline definition endpoints.
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status

from pipeline_promoter.api.dependencies import get_engine
from pipeline_promoter.api.schemas.responses import (
    PipelineDetail,
    PipelineListResponse,
    PipelineSummary,
)
from pipeline_promoter.core.models import PipelineDefinition
from pipeline_promoter.orchestrator.core import PipelineEngine

router = APIRouter()
logger = logging.getLogger(__name__)


def _summary(definition: PipelineDefinition) -> PipelineSummary:
    return PipelineSummary(
        id=definition.id,
        version=definition.version,
        description=definition.description,
        stages=[s.name for s in definition.stages],
    )


def _detail(engine: PipelineEngine, definition: PipelineDefinition) -> PipelineDetail:
    return PipelineDetail(
        definition=definition,
        version=definition.version,
        versions=engine.catalog.versions(definition.id),
    )


@router.get("", response_model=PipelineListResponse)
def list_pipelines(engine: PipelineEngine = Depends(get_engine)) -> PipelineListResponse:
    """List the current version of every registered pipeline."""
    pipelines = [_summary(d) for d in engine.catalog.list_definitions()]
    return PipelineListResponse(pipelines=pipelines, total=len(pipelines))


@router.post("", response_model=PipelineDetail, status_code=status.HTTP_201_CREATED)
def register_pipeline(
    body: dict[str, Any] = Body(..., description="Pipeline definition"),
    engine: PipelineEngine = Depends(get_engine),
) -> PipelineDetail:
    """
    Register a pipeline definition.

    Changed content becomes a new version; running runs keep theirs.
    """
    definition = engine.catalog.register(body, source="api")
    return _detail(engine, definition)


@router.get("/{pipeline_id}", response_model=PipelineDetail)
def get_pipeline(
    pipeline_id: str,
    version: str | None = Query(None, description="Specific version"),
    engine: PipelineEngine = Depends(get_engine),
) -> PipelineDetail:
    """Get a pipeline definition and its version history."""
    return _detail(engine, engine.catalog.get(pipeline_id, version))
