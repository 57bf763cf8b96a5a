"""
API route handlers.

This package contains all route definitions for the Pipeline Promoter API.
"""

from pipeline_promoter.api.routes import environments, health, pipelines, promotions, runs

__all__ = [
    "environments",
    "health",
    "pipelines",
    "promotions",
    "runs",
]
