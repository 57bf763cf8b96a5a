"""Pytest configuration and fixtures."""

import os
import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest

from pipeline_promoter.approval import ApprovalGate
from pipeline_promoter.audit import AuditLogger
from pipeline_promoter.config import PromoterSettings, get_settings
from pipeline_promoter.core.models import Permission
from pipeline_promoter.orchestrator.core import PipelineEngine
from pipeline_promoter.pipelines import PipelineCatalog
from pipeline_promoter.policy import AccessPolicyStore
from pipeline_promoter.registry import ArtifactRegistry
from pipeline_promoter.stages import StageExecutor, default_catalog
from pipeline_promoter.state import RunStore

from helpers import DEV_DIGEST, SERVICE

# Quiet logging for CLI tests
os.environ.setdefault("PP_LOG_LEVEL", "WARNING")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that is cleaned up after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir: Path) -> PromoterSettings:
    """Settings pointing every store at the temp directory."""
    return PromoterSettings(
        state_dir=temp_dir / "state",
        registry_dir=temp_dir / "registry",
        policy_dir=temp_dir / "policy",
        audit_dir=temp_dir / "audit",
        pipelines_dir=temp_dir / "pipelines",
        approval_timeout_seconds=5.0,
        stage_timeout_seconds=5.0,
        service_identity=SERVICE,
    )


@pytest.fixture
def clean_settings_cache() -> Generator[None, None, None]:
    """Drop cached settings before and after a test that sets PP_* variables."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def audit(settings: PromoterSettings) -> AuditLogger:
    return AuditLogger(settings.audit_dir)


@pytest.fixture
def policy(settings: PromoterSettings, audit: AuditLogger) -> AccessPolicyStore:
    return AccessPolicyStore(settings.policy_dir, audit)


@pytest.fixture
def registry(
    settings: PromoterSettings, policy: AccessPolicyStore, audit: AuditLogger
) -> ArtifactRegistry:
    """Registry with dev and prod environments and dev:latest pushed."""
    registry = ArtifactRegistry(settings.registry_dir, policy=policy, audit=audit)
    registry.create_environment("dev")
    registry.create_environment("prod")
    registry.push("dev", "latest", digest=DEV_DIGEST)
    return registry


@pytest.fixture
def store(settings: PromoterSettings) -> RunStore:
    return RunStore(settings.state_dir)


@pytest.fixture
def engine(
    settings: PromoterSettings,
    registry: ArtifactRegistry,
    store: RunStore,
    audit: AuditLogger,
) -> Generator[PipelineEngine, None, None]:
    """Engine wired from the fixtures above; active runs are aborted on teardown."""
    actions = default_catalog(registry)
    engine = PipelineEngine(
        registry=registry,
        catalog=PipelineCatalog(store, actions),
        store=store,
        executor=StageExecutor(actions, default_timeout=settings.stage_timeout_seconds),
        gate=ApprovalGate(registry.policy, audit),
        audit=audit,
        settings=settings,
    )
    yield engine
    engine.shutdown(timeout=2.0)


@pytest.fixture
def promotion_pipeline() -> dict[str, Any]:
    """Build, deploy, test, approve into prod, promote dev:latest to prod:live."""
    return {
        "id": "frontend",
        "description": "Frontend promotion",
        "service_identity": SERVICE,
        "stages": [
            {"name": "build", "kind": "build"},
            {"name": "deploy-dev", "kind": "deploy"},
            {"name": "test", "kind": "test"},
            {"name": "approve-prod", "kind": "approval", "environment": "prod", "timeout": 5},
            {
                "name": "promote-prod",
                "kind": "promote",
                "params": {
                    "source_env": "dev",
                    "tag": "latest",
                    "dest_env": "prod",
                    "dest_tag": "live",
                },
            },
        ],
    }


@pytest.fixture
def grant_promoters(policy: AccessPolicyStore) -> None:
    """Let the pipeline's service account and alice promote into prod."""
    policy.grant(SERVICE, "prod", [Permission.PROMOTE])
    policy.grant("alice", "prod", [Permission.PROMOTE])
