"""
Runtime configuration.

Settings are read from PP_* environment variables:
- PP_STATE_DIR: Run, approval and definition records (default: var/state)
- PP_REGISTRY_DIR: Environment documents (default: var/registry)
- PP_POLICY_DIR: Policy bindings and change log (default: var/policy)
- PP_AUDIT_DIR: Audit JSONL files (default: var/audit)
- PP_PIPELINES_DIR: Definition files loaded at startup (default: configs/pipelines)
- PP_APPROVAL_TIMEOUT: Default approval timeout in seconds (default: 900)
- PP_STAGE_TIMEOUT: Default stage timeout in seconds (default: 3600)
- PP_CONFLICT_POLICY: "reject" or "queue" concurrent promotions (default: reject)
- PP_SERVICE_IDENTITY: Identity pipelines promote as
- PP_DEPLOY_WEBHOOKS: "env=url,env=url" deployment trigger webhooks
- PP_LOG_LEVEL: Logging level (default: INFO)
"""

import logging
import os
from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

from pipeline_promoter.core.exceptions import ConfigurationError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConflictPolicy(str, Enum):
    """What the registry does with a promotion racing another on the same tag."""

    REJECT = "reject"
    QUEUE = "queue"


class PromoterSettings(BaseModel):
    """Configuration for the promoter services."""

    state_dir: Path = Path("var/state")
    registry_dir: Path = Path("var/registry")
    policy_dir: Path = Path("var/policy")
    audit_dir: Path = Path("var/audit")
    pipelines_dir: Path = Path("configs/pipelines")
    approval_timeout_seconds: float = Field(default=900.0, gt=0)
    stage_timeout_seconds: float = Field(default=3600.0, gt=0)
    conflict_policy: ConflictPolicy = ConflictPolicy.REJECT
    service_identity: str = "system:serviceaccount:cicd:jenkins"
    deploy_webhooks: dict[str, str] = Field(default_factory=dict)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "PromoterSettings":
        """Load configuration from environment."""
        values: dict[str, object] = {}

        for env_var, key in (
            ("PP_STATE_DIR", "state_dir"),
            ("PP_REGISTRY_DIR", "registry_dir"),
            ("PP_POLICY_DIR", "policy_dir"),
            ("PP_AUDIT_DIR", "audit_dir"),
            ("PP_PIPELINES_DIR", "pipelines_dir"),
        ):
            raw = os.getenv(env_var)
            if raw:
                values[key] = Path(raw)

        for env_var, key in (
            ("PP_APPROVAL_TIMEOUT", "approval_timeout_seconds"),
            ("PP_STAGE_TIMEOUT", "stage_timeout_seconds"),
        ):
            raw = os.getenv(env_var)
            if raw:
                values[key] = _parse_seconds(env_var, raw)

        policy = os.getenv("PP_CONFLICT_POLICY")
        if policy:
            try:
                values["conflict_policy"] = ConflictPolicy(policy.lower())
            except ValueError:
                raise ConfigurationError(
                    f"Invalid conflict policy: {policy}", env_var="PP_CONFLICT_POLICY", value=policy
                )

        identity = os.getenv("PP_SERVICE_IDENTITY")
        if identity:
            values["service_identity"] = identity

        webhooks = os.getenv("PP_DEPLOY_WEBHOOKS")
        if webhooks:
            values["deploy_webhooks"] = _parse_webhooks(webhooks)

        level = os.getenv("PP_LOG_LEVEL")
        if level:
            if logging.getLevelName(level.upper()) == f"Level {level.upper()}":
                raise ConfigurationError(
                    f"Invalid log level: {level}", env_var="PP_LOG_LEVEL", value=level
                )
            values["log_level"] = level.upper()

        return cls(**values)


def _parse_seconds(env_var: str, raw: str) -> float:
    try:
        seconds = float(raw)
    except ValueError:
        raise ConfigurationError(f"Expected a number of seconds in {env_var}", env_var=env_var, value=raw)
    if seconds <= 0:
        raise ConfigurationError(f"{env_var} must be positive", env_var=env_var, value=raw)
    return seconds


def _parse_webhooks(raw: str) -> dict[str, str]:
    hooks = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        environment, sep, url = part.partition("=")
        if not sep or not environment.strip() or not url.strip():
            raise ConfigurationError(
                "Deployment webhooks must look like env=url", env_var="PP_DEPLOY_WEBHOOKS", value=part
            )
        hooks[environment.strip()] = url.strip()
    return hooks


@lru_cache(maxsize=1)
def get_settings() -> PromoterSettings:
    """Get the process-wide settings (cached)."""
    return PromoterSettings.from_env()


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for CLI and API processes."""
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format=LOG_FORMAT,
    )
