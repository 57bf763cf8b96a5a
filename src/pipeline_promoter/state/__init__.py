"""
Pipeline Promoter State Module.

Persists runs, approval requests and definition versions.
"""

__all__ = ["RunStore"]

from pipeline_promoter.state.manager import RunStore
