"""
Pipeline Promoter Pipelines Module.

Registers and versions pipeline definitions.
"""

__all__ = ["PipelineCatalog"]

from pipeline_promoter.pipelines.catalog import PipelineCatalog
