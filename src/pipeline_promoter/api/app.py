"""
FastAPI Application Setup.

Main application factory for the Pipeline Promoter REST API.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from pipeline_promoter import __version__
from pipeline_promoter.api.middleware import RequestLoggingMiddleware
from pipeline_promoter.api.routes import environments, health, pipelines, promotions, runs
from pipeline_promoter.api.schemas.exceptions import APIException, status_for
from pipeline_promoter.core.exceptions import PromoterError
from pipeline_promoter.orchestrator.core import PipelineEngine, build_engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for startup and shutdown events.

    Builds the engine if none was injected and resumes runs a previous
    process left unfinished. Runs still active at shutdown stay resumable.
    """
    logger.info("Pipeline Promoter API starting up...")
    logger.info(f"Version: {__version__}")

    if getattr(app.state, "engine", None) is None:
        app.state.engine = build_engine()
    resumed = app.state.engine.resume_incomplete()
    if resumed:
        logger.info(f"Resumed {len(resumed)} incomplete run(s)")

    yield

    logger.info("Pipeline Promoter API shutting down...")


def create_app(engine: PipelineEngine | None = None, title: str = "Pipeline Promoter API") -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        engine: Engine to serve (built from settings on first use if None)
        title: Application title for OpenAPI docs

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title=title,
        description="Run control, approval callbacks and promotions",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(
        health.router,
        prefix="/health",
        tags=["Health"],
    )
    app.include_router(
        pipelines.router,
        prefix="/api/v1/pipelines",
        tags=["Pipelines"],
    )
    app.include_router(
        runs.router,
        prefix="/api/v1/runs",
        tags=["Runs"],
    )
    app.include_router(
        promotions.router,
        prefix="/api/v1/promotions",
        tags=["Promotions"],
    )
    app.include_router(
        environments.router,
        prefix="/api/v1/environments",
        tags=["Environments"],
    )

    # Exception handlers
    @app.exception_handler(APIException)
    async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
        """Handle API exceptions with proper error responses."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "type": exc.error_type,
                    "message": exc.message,
                    "detail": exc.detail,
                }
            },
        )

    @app.exception_handler(PromoterError)
    async def promoter_exception_handler(request: Request, exc: PromoterError) -> JSONResponse:
        """Map domain errors to HTTP status codes."""
        status_code, error_type = status_for(exc)
        return JSONResponse(
            status_code=status_code,
            content={
                "error": {
                    "type": error_type,
                    "message": exc.message,
                    "detail": exc.details or None,
                }
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "type": "internal_error",
                    "message": "An unexpected error occurred",
                    "detail": str(exc) if logger.isEnabledFor(logging.DEBUG) else None,
                }
            },
        )

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, object]:
        """Root endpoint with API information."""
        return {
            "name": "Pipeline Promoter API",
            "version": __version__,
            "status": "operational",
            "docs": "/docs",
            "health": "/health",
        }

    return app


# Create default app instance for direct imports
app = create_app()
