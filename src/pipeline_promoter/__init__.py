"""
Pipeline Promoter - staged promotion of immutable artifacts between environments.

Runs build/deploy/test pipelines, holds them at human approval gates, and
retags an approved artifact from one environment into the next.
"""

__version__ = "0.1.0"

# API module is available but not exported by default
# Import explicitly: from pipeline_promoter.api import create_app

__all__ = []
