"""API integration tests for the Pipeline Promoter FastAPI application.

These tests drive a real engine over temporary directories through the
FastAPI TestClient.
"""

from typing import Any

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from pipeline_promoter.api.app import create_app
from pipeline_promoter.core.models import RunStatus
from pipeline_promoter.orchestrator import PipelineEngine

from helpers import DEV_DIGEST, SERVICE, wait_for_status

ALICE = {"X-Identity": "alice"}


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def client(engine: PipelineEngine) -> TestClient:
    """Create a test client serving the fixture engine."""
    return TestClient(create_app(engine))


@pytest.fixture
def registered(client: TestClient, promotion_pipeline: dict[str, Any]) -> dict[str, Any]:
    """Register the promotion pipeline through the API."""
    response = client.post("/api/v1/pipelines", json=promotion_pipeline)
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


def _start(client: TestClient) -> str:
    response = client.post("/api/v1/runs", json={"pipeline_id": "frontend"}, headers=ALICE)
    assert response.status_code == status.HTTP_202_ACCEPTED
    return response.json()["run_id"]


# =============================================================================
# Health and root
# =============================================================================


class TestHealth:
    """Tests for health endpoints."""

    def test_health(self, client: TestClient) -> None:
        """Health reports components."""
        response = client.get("/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert "registry" in data["components"]
        assert data["components"]["runs"] == "healthy: 0 active"

    def test_root(self, client: TestClient) -> None:
        """Root returns API info."""
        response = client.get("/")
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["name"] == "Pipeline Promoter API"


# =============================================================================
# Pipelines
# =============================================================================


class TestPipelines:
    """Tests for pipeline endpoints."""

    def test_register_and_get(self, client: TestClient, registered: dict[str, Any]) -> None:
        """A registered pipeline can be fetched with its versions."""
        assert registered["definition"]["id"] == "frontend"
        assert registered["versions"] == [registered["version"]]

        response = client.get("/api/v1/pipelines/frontend")
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["version"] == registered["version"]

        listing = client.get("/api/v1/pipelines").json()
        assert listing["total"] == 1
        assert listing["pipelines"][0]["stages"][3] == "approve-prod"

    def test_invalid_definition(self, client: TestClient) -> None:
        """Invalid definitions return 400 with validation errors."""
        response = client.post(
            "/api/v1/pipelines",
            json={"id": "bad", "stages": [{"name": "x", "kind": "build", "action": "helm"}]},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        error = response.json()["error"]
        assert error["type"] == "invalid_definition"
        assert error["detail"]["validation_errors"]

    def test_unknown_pipeline(self, client: TestClient) -> None:
        """Unknown pipelines return 404."""
        response = client.get("/api/v1/pipelines/missing")
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"]["type"] == "not_found"


# =============================================================================
# Runs and approvals
# =============================================================================


@pytest.mark.usefixtures("grant_promoters", "registered")
class TestRuns:
    """Tests for run control and the approval callback."""

    def test_start_requires_identity(self, client: TestClient) -> None:
        """Requests without X-Identity are rejected."""
        response = client.post("/api/v1/runs", json={"pipeline_id": "frontend"})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"]["type"] == "missing_identity"

    def test_start_unknown_pipeline(self, client: TestClient) -> None:
        """Starting an unknown pipeline returns 404."""
        response = client.post("/api/v1/runs", json={"pipeline_id": "nope"}, headers=ALICE)
        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_approve_through_callback(self, client: TestClient, engine: PipelineEngine) -> None:
        """The approval callback resumes the run and the promotion lands."""
        run_id = _start(client)
        wait_for_status(engine, run_id, RunStatus.AWAITING_APPROVAL)

        detail = client.get(f"/api/v1/runs/{run_id}").json()
        assert detail["status"] == "awaiting_approval"
        request_id = detail["pending_approval"]["request_id"]

        response = client.post(
            f"/api/v1/runs/{run_id}/approvals/{request_id}",
            json={"decision": "approve", "comment": "ship it"},
            headers=ALICE,
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["disposition"] == "approved"

        run = engine.wait(run_id, timeout=5)
        assert run.status == RunStatus.SUCCEEDED

        tags = client.get("/api/v1/environments/prod/tags").json()
        assert tags["tags"] == {"live": DEV_DIGEST}

    def test_second_decision_conflict(self, client: TestClient, engine: PipelineEngine) -> None:
        """A second decision returns 409."""
        run_id = _start(client)
        request_id = wait_for_status(engine, run_id, RunStatus.AWAITING_APPROVAL).pending_approval().request_id
        url = f"/api/v1/runs/{run_id}/approvals/{request_id}"

        first = client.post(url, json={"decision": "reject"}, headers=ALICE)
        second = client.post(url, json={"decision": "approve"}, headers=ALICE)

        assert first.status_code == status.HTTP_200_OK
        assert second.status_code == status.HTTP_409_CONFLICT
        assert second.json()["error"]["type"] == "already_decided"
        assert engine.wait(run_id, timeout=5).status == RunStatus.FAILED

    def test_decider_forbidden(self, client: TestClient, engine: PipelineEngine) -> None:
        """A decider without promote on prod gets 403."""
        run_id = _start(client)
        request_id = wait_for_status(engine, run_id, RunStatus.AWAITING_APPROVAL).pending_approval().request_id

        response = client.post(
            f"/api/v1/runs/{run_id}/approvals/{request_id}",
            json={"decision": "approve"},
            headers={"X-Identity": "mallory"},
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["error"]["type"] == "permission_denied"

    def test_invalid_decision(self, client: TestClient, engine: PipelineEngine) -> None:
        """Decisions other than approve or reject fail validation."""
        run_id = _start(client)
        request_id = wait_for_status(engine, run_id, RunStatus.AWAITING_APPROVAL).pending_approval().request_id

        response = client.post(
            f"/api/v1/runs/{run_id}/approvals/{request_id}",
            json={"decision": "maybe"},
            headers=ALICE,
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_abort(self, client: TestClient, engine: PipelineEngine) -> None:
        """Aborting a suspended run ends it; aborting again conflicts."""
        run_id = _start(client)
        wait_for_status(engine, run_id, RunStatus.AWAITING_APPROVAL)

        response = client.post(
            f"/api/v1/runs/{run_id}/abort", json={"reason": "bad build"}, headers={"X-Identity": "ops"}
        )
        assert response.status_code == status.HTTP_200_OK

        run = engine.wait(run_id, timeout=5)
        assert run.status == RunStatus.ABORTED
        assert run.aborted_by == "ops"

        again = client.post(f"/api/v1/runs/{run_id}/abort", headers={"X-Identity": "ops"})
        assert again.status_code == status.HTTP_409_CONFLICT

    def test_list_runs(self, client: TestClient, engine: PipelineEngine) -> None:
        """Runs are listed with filters."""
        run_id = _start(client)
        wait_for_status(engine, run_id, RunStatus.AWAITING_APPROVAL)

        listing = client.get("/api/v1/runs", params={"pipeline_id": "frontend"}).json()
        assert listing["total"] == 1
        assert listing["runs"][0]["run_id"] == run_id
        assert listing["runs"][0]["triggered_by"] == "alice"

        filtered = client.get("/api/v1/runs", params={"status": "succeeded"}).json()
        assert filtered["total"] == 0

    def test_unknown_run(self, client: TestClient) -> None:
        """Unknown runs return 404."""
        assert client.get("/api/v1/runs/run_missing").status_code == status.HTTP_404_NOT_FOUND


# =============================================================================
# Promotions and environments
# =============================================================================


class TestPromotions:
    """Tests for the direct promotion endpoint."""

    def test_promote(self, client: TestClient, engine: PipelineEngine) -> None:
        """A permitted identity can promote directly."""
        engine.policy.grant(SERVICE, "prod", ["promote"])

        response = client.post(
            "/api/v1/promotions",
            json={"source_env": "dev", "tag": "latest", "dest_env": "prod", "dest_tag": "live"},
            headers={"X-Identity": SERVICE},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["digest"] == DEV_DIGEST
        assert data["source"] == "dev:latest"

    def test_promote_denied(self, client: TestClient) -> None:
        """Promotion without permission returns 403 and changes nothing."""
        response = client.post(
            "/api/v1/promotions",
            json={"source_env": "dev", "tag": "latest", "dest_env": "prod"},
            headers=ALICE,
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert client.get("/api/v1/environments/prod/tags").json()["tags"] == {}

    def test_environments(self, client: TestClient) -> None:
        """Environments are listed; unknown ones 404."""
        assert client.get("/api/v1/environments").json()["environments"] == ["dev", "prod"]
        assert client.get("/api/v1/environments/qa/tags").status_code == status.HTTP_404_NOT_FOUND
