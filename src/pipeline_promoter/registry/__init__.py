"""
Pipeline Promoter Registry Module.

Provides the environment/tag store that promotions write to.
"""

__all__ = [
    "ArtifactRecord",
    "ArtifactRegistry",
    "DeploymentTrigger",
    "EnvironmentRecord",
    "WebhookDeploymentTrigger",
    "compute_digest",
    "install_webhooks",
]

from pipeline_promoter.registry.storage import (
    ArtifactRecord,
    ArtifactRegistry,
    EnvironmentRecord,
    compute_digest,
)
from pipeline_promoter.registry.triggers import (
    DeploymentTrigger,
    WebhookDeploymentTrigger,
    install_webhooks,
)
