"""
Pipeline Promoter Orchestrator Module.

Runs pipelines stage by stage and suspends them at approval gates.
"""

__all__ = ["PipelineEngine", "build_engine"]

from pipeline_promoter.orchestrator.core import PipelineEngine, build_engine
