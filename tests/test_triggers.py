"""Tests for deployment webhook triggers."""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from pipeline_promoter.core.models import Permission, TagMove
from pipeline_promoter.policy import AccessPolicyStore
from pipeline_promoter.registry import ArtifactRegistry, WebhookDeploymentTrigger, install_webhooks

from helpers import DEV_DIGEST, SERVICE


def _mock_client(response: MagicMock) -> MagicMock:
    client = MagicMock()
    client.__enter__.return_value = client
    client.post.return_value = response
    return client


class TestWebhookDeploymentTrigger:
    """Tests for WebhookDeploymentTrigger."""

    def test_posts_move(self) -> None:
        """The tag move is posted as JSON."""
        client = _mock_client(MagicMock())
        trigger = WebhookDeploymentTrigger("https://deploy.example.com/hook")
        move = TagMove(environment="prod", tag="live", digest=DEV_DIGEST, actor=SERVICE)

        with patch("pipeline_promoter.registry.triggers.httpx.Client", return_value=client):
            trigger(move)

        url = client.post.call_args.args[0]
        payload = client.post.call_args.kwargs["json"]
        assert url == "https://deploy.example.com/hook"
        assert payload["event"] == "tag_moved"
        assert payload["digest"] == DEV_DIGEST
        assert payload["environment"] == "prod"

    def test_http_error_propagates(self) -> None:
        """An error response raises so the registry can audit it."""
        response = MagicMock()
        response.raise_for_status.side_effect = httpx.HTTPStatusError(
            "503", request=MagicMock(), response=MagicMock()
        )
        client = _mock_client(response)
        trigger = WebhookDeploymentTrigger("https://deploy.example.com/hook")

        with patch("pipeline_promoter.registry.triggers.httpx.Client", return_value=client):
            with pytest.raises(httpx.HTTPStatusError):
                trigger(TagMove(environment="prod", tag="live", digest=DEV_DIGEST))


class TestInstallWebhooks:
    """Tests for install_webhooks."""

    def test_fires_on_promotion(self, registry: ArtifactRegistry, policy: AccessPolicyStore) -> None:
        """Configured environments notify their webhook when a tag moves."""
        policy.grant(SERVICE, "prod", [Permission.PROMOTE])
        triggers = install_webhooks(registry, {"prod": "https://deploy.example.com/prod"})
        client = _mock_client(MagicMock())

        with patch("pipeline_promoter.registry.triggers.httpx.Client", return_value=client):
            registry.promote("dev", "latest", "prod", "live", SERVICE)

        assert [t.name for t in triggers] == ["webhook:https://deploy.example.com/prod"]
        assert client.post.call_count == 1
