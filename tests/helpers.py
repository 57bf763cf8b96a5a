"""Shared constants and polling helpers for the test suite."""

import time
from typing import Callable

import pytest

from pipeline_promoter.core.models import Run, RunStatus
from pipeline_promoter.orchestrator.core import PipelineEngine

DEV_DIGEST = "sha256:" + "a" * 64
SERVICE = "system:serviceaccount:cicd:jenkins"


def wait_for(
    engine: PipelineEngine,
    run_id: str,
    predicate: Callable[[Run], bool],
    timeout: float = 5.0,
) -> Run:
    """Poll a run until predicate holds; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while True:
        run = engine.get_status(run_id)
        if predicate(run):
            return run
        if time.monotonic() > deadline:
            pytest.fail(f"Run {run_id} stuck in {run.status.value}")
        time.sleep(0.02)


def wait_for_status(
    engine: PipelineEngine, run_id: str, status: RunStatus, timeout: float = 5.0
) -> Run:
    return wait_for(engine, run_id, lambda run: run.status == status, timeout)
