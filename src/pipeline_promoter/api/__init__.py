"""
Pipeline Promoter API Module.

REST API for run control, approval callbacks and promotions.
"""

from pipeline_promoter.api.app import create_app

__all__ = ["create_app"]
