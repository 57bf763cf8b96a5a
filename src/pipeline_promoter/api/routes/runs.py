"""
Run endpoints.

Start, inspect and abort pipeline runs, and deliver approval decisions.
"""

import logging

from fastapi import APIRouter, Body, Depends, Query, status

from pipeline_promoter.api.dependencies import get_engine, get_identity
from pipeline_promoter.api.schemas.requests import (
    AbortRequest,
    DecisionRequest,
    StartRunRequest,
)
from pipeline_promoter.api.schemas.responses import (
    RunDetail,
    RunListResponse,
    RunSummary,
    StartRunResponse,
)
from pipeline_promoter.core.models import ApprovalRequest, RunStatus
from pipeline_promoter.orchestrator.core import PipelineEngine

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=StartRunResponse, status_code=status.HTTP_202_ACCEPTED)
def start_run(
    body: StartRunRequest,
    identity: str = Depends(get_identity),
    engine: PipelineEngine = Depends(get_engine),
) -> StartRunResponse:
    """Start a run of the current version of a pipeline."""
    run_id = engine.start(body.pipeline_id, triggered_by=identity, parameters=body.parameters)
    return StartRunResponse(run_id=run_id, status=engine.get_status(run_id).status)


@router.get("", response_model=RunListResponse)
def list_runs(
    pipeline_id: str | None = Query(None, description="Filter by pipeline id"),
    status_filter: RunStatus | None = Query(None, alias="status", description="Filter by run status"),
    limit: int = Query(50, ge=1, le=500, description="Maximum results"),
    engine: PipelineEngine = Depends(get_engine),
) -> RunListResponse:
    """List runs, newest first."""
    runs = engine.list_runs(definition_id=pipeline_id, status=status_filter, limit=limit)
    return RunListResponse(runs=[RunSummary.from_run(r) for r in runs], total=len(runs))


@router.get("/{run_id}", response_model=RunDetail)
def get_run(run_id: str, engine: PipelineEngine = Depends(get_engine)) -> RunDetail:
    """
    Get a run's state and stage result log.

    Raises:
        NotFoundError: If run doesn't exist
    """
    return RunDetail.from_run(engine.get_status(run_id))


@router.post("/{run_id}/abort", response_model=RunDetail)
def abort_run(
    run_id: str,
    body: AbortRequest | None = Body(None),
    identity: str = Depends(get_identity),
    engine: PipelineEngine = Depends(get_engine),
) -> RunDetail:
    """Abort a pending, running or suspended run."""
    if body and body.reason:
        logger.info(f"Abort of {run_id} requested by {identity}: {body.reason}")
    return RunDetail.from_run(engine.abort(run_id, actor=identity))


@router.post("/{run_id}/approvals/{request_id}", response_model=ApprovalRequest)
def decide_approval(
    run_id: str,
    request_id: str,
    body: DecisionRequest,
    identity: str = Depends(get_identity),
    engine: PipelineEngine = Depends(get_engine),
) -> ApprovalRequest:
    """
    Approval callback.

    Returns 409 when the request is already decided or expired and 403 when
    the identity may not promote into the gated environment.
    """
    return engine.decide(run_id, request_id, body.decision, identity, body.comment)
