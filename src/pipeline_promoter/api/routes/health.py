"""
Health check endpoints.
"""

from datetime import datetime, timezone
from pathlib import Path

from fastapi import APIRouter, Depends

from pipeline_promoter import __version__
from pipeline_promoter.api.dependencies import get_engine
from pipeline_promoter.api.schemas.responses import HealthResponse
from pipeline_promoter.orchestrator.core import PipelineEngine

router = APIRouter()


def _writable(path: Path) -> str:
    return "healthy: writable" if path.exists() and path.is_dir() else "unhealthy: missing"


@router.get("", response_model=HealthResponse)
@router.get("/", response_model=HealthResponse, include_in_schema=False)
def health_check(engine: PipelineEngine = Depends(get_engine)) -> HealthResponse:
    """Report storage directories and the number of active runs."""
    settings = engine.settings
    components = {
        "state": _writable(engine.store.state_dir),
        "registry": _writable(settings.registry_dir),
        "policy": _writable(settings.policy_dir),
        "pipelines": f"healthy: {len(engine.catalog.list_definitions())} registered",
        "runs": f"healthy: {len(engine.active_runs())} active",
    }
    status = "healthy" if all(v.startswith("healthy") for v in components.values()) else "degraded"
    return HealthResponse(
        status=status,
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        components=components,
    )
