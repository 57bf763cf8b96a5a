"""
Shared route dependencies.
"""

from fastapi import Header, Request

from pipeline_promoter.api.schemas.exceptions import MissingIdentityError
from pipeline_promoter.orchestrator.core import PipelineEngine, build_engine


def get_engine(request: Request) -> PipelineEngine:
    """The engine attached to the application, built on first use."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        engine = build_engine()
        request.app.state.engine = engine
    return engine


def get_identity(x_identity: str | None = Header(None)) -> str:
    """
    Acting identity for the request.

    Authentication happens upstream; the proxy forwards the verified
    principal in X-Identity.
    """
    if not x_identity or not x_identity.strip():
        raise MissingIdentityError()
    return x_identity.strip()
