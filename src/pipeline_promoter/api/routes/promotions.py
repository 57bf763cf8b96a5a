"""
Direct promotion endpoint.
"""

from fastapi import APIRouter, Depends

from pipeline_promoter.api.dependencies import get_engine, get_identity
from pipeline_promoter.api.schemas.requests import PromoteRequest
from pipeline_promoter.api.schemas.responses import PromotionResponse
from pipeline_promoter.orchestrator.core import PipelineEngine

router = APIRouter()


@router.post("", response_model=PromotionResponse)
def promote(
    body: PromoteRequest,
    identity: str = Depends(get_identity),
    engine: PipelineEngine = Depends(get_engine),
) -> PromotionResponse:
    """Point dest_env:dest_tag at the digest source_env:tag resolves to."""
    dest_tag = body.dest_tag or body.tag
    artifact = engine.registry.promote(body.source_env, body.tag, body.dest_env, dest_tag, identity)
    return PromotionResponse(
        environment=artifact.environment,
        tag=dest_tag,
        digest=artifact.digest,
        source=f"{body.source_env}:{body.tag}",
    )
