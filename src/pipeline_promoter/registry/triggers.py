"""
Deployment triggers - listeners fired when a promotion moves a tag.

The orchestrator's rollout machinery is external; a trigger only tells it
which digest a tag now points at.
"""

import logging
from typing import Protocol

import httpx

from pipeline_promoter.core.models import TagMove
from pipeline_promoter.registry.storage import ArtifactRegistry

logger = logging.getLogger(__name__)


class DeploymentTrigger(Protocol):
    """Callable notified with each tag move in its environment."""

    def __call__(self, move: TagMove) -> None: ...


class WebhookDeploymentTrigger:
    """POST the tag move as JSON to an external deployment endpoint."""

    def __init__(self, url: str, timeout: float = 10.0, headers: dict[str, str] | None = None):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self.name = f"webhook:{url}"

    def __call__(self, move: TagMove) -> None:
        payload = {
            "event": "tag_moved",
            "environment": move.environment,
            "tag": move.tag,
            "digest": move.digest,
            "previous_digest": move.previous_digest,
            "source": move.source,
            "actor": move.actor,
            "moved_at": move.moved_at,
        }
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(self.url, json=payload, headers=self.headers)
            response.raise_for_status()
        logger.info(f"Deployment webhook {self.url} notified of {move.environment}:{move.tag}")


def install_webhooks(registry: ArtifactRegistry, webhooks: dict[str, str]) -> list[WebhookDeploymentTrigger]:
    """Attach one webhook trigger per configured environment."""
    triggers = []
    for environment, url in sorted(webhooks.items()):
        trigger = WebhookDeploymentTrigger(url)
        registry.add_listener(environment, trigger)
        triggers.append(trigger)
    return triggers
