"""
Pipeline Promoter Stages Module.

Runs build, deploy, test and promote stage actions.
"""

__all__ = [
    "ActionCatalog",
    "ActionOutput",
    "CancelToken",
    "CommandAction",
    "HttpAction",
    "NoopAction",
    "PromoteAction",
    "StageAction",
    "StageContext",
    "StageExecutor",
    "default_catalog",
]

from pipeline_promoter.stages.actions import (
    ActionCatalog,
    ActionOutput,
    CommandAction,
    HttpAction,
    NoopAction,
    PromoteAction,
    StageAction,
    default_catalog,
)
from pipeline_promoter.stages.context import CancelToken, StageContext
from pipeline_promoter.stages.executor import StageExecutor
