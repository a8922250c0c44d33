"""
Tests for FastAPI Endpoints

Integration tests for the ledger views and sync controls.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from node_ledger.api import create_app
from node_ledger.config import DeviceIdentity

from conftest import DEVICE_ID, GATEWAY


def _gateway(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/tasks"):
        return httpx.Response(200, json={"success": True, "data": {"data": [
            {"id": "gw-1", "model": "llama3", "status": "succeed"},
        ]}})
    return httpx.Response(200, json={"data": [
        {"id": "gw-e1", "task_id": "gw-1", "job_rewards": 0.25},
        {"id": "gw-e2", "task_id": "unknown", "job_rewards": 1.0},
    ]})


def _backend(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"response": "x" * 40, "done": True})


@pytest.fixture
def client(settings):
    """Create test client for a registered device."""
    app = create_app(
        settings=settings,
        device=DeviceIdentity(device_id=DEVICE_ID, gateway_address=GATEWAY, auth_key="k", registered=True),
        backend_transport=httpx.MockTransport(_backend),
        gateway_transport=httpx.MockTransport(_gateway),
        start_sync=False,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["device_id"] == DEVICE_ID
        assert data["registered"] is True
        assert data["sync_enabled"] is True
        assert "uptime_seconds" in data


class TestAuthentication:
    """Test API key enforcement on ledger views."""

    def test_missing_key(self, client):
        response = client.get("/tasks")
        assert response.status_code == 422

    def test_invalid_key(self, client):
        response = client.get("/tasks", headers={"X-API-Key": "wrong-key"})
        assert response.status_code == 401

    def test_inference_routes_need_no_key(self, client):
        response = client.post("/api/generate", json={"model": "llama3", "prompt": "hi"})
        assert response.status_code == 200


class TestTaskEndpoints:
    """Test task history endpoints."""

    def test_metered_call_visible(self, client, auth_headers):
        client.post("/api/generate", json={"model": "llama3", "prompt": "abcd"})

        response = client.get("/tasks", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        task = data["tasks"][0]
        assert task["status"] == "completed"
        assert task["source"] == "local"
        assert task["eval_count"] == 10

        detail = client.get(f"/tasks/{task['id']}", headers=auth_headers)
        assert detail.status_code == 200
        assert detail.json()["id"] == task["id"]

    def test_unknown_task(self, client, auth_headers):
        response = client.get("/tasks/nope", headers=auth_headers)
        assert response.status_code == 404

    def test_task_stats(self, client, auth_headers):
        client.post("/api/generate", json={"model": "llama3", "prompt": "abcd"})

        response = client.get("/tasks/stats", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["completed"] == 1
        assert response.json()["total"] == 1

    def test_pagination_bounds(self, client, auth_headers):
        response = client.get("/tasks?page=0", headers=auth_headers)
        assert response.status_code == 422


class TestEarningsEndpoints:
    """Test earnings endpoints."""

    def test_earnings_and_summary(self, client, auth_headers):
        client.post("/api/generate", json={"model": "llama3", "prompt": "abcd"})

        earnings = client.get("/earnings", headers=auth_headers).json()
        assert len(earnings) == 1
        # 1 * 0.001 + 10 * 0.002 + 0.01
        assert earnings[0]["job_rewards"] == pytest.approx(0.031)

        summary = client.get("/earnings/summary", headers=auth_headers).json()
        assert summary["count"] == 1
        assert summary["today"] == pytest.approx(0.031)


class TestRatesEndpoint:
    """Test rate catalog endpoint."""

    def test_rates(self, client, auth_headers):
        response = client.get("/rates", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["rates"]["ollama"]["chat"] == {"input": 0.001, "output": 0.002, "base": 0.01}
        assert data["default"] == {"input": 0.001, "output": 0.002, "base": 0.01}
        assert data["routes"]["/openai/chat/completions"] == "ollama:chat/completions"


class TestSyncEndpoints:
    """Test manual sync and status."""

    def test_sync_run(self, client, auth_headers):
        response = client.post("/sync/run", headers=auth_headers)

        assert response.status_code == 200
        results = response.json()["results"]
        assert results["tasks"]["created"] == 1
        assert results["earnings"]["created"] == 1
        assert results["earnings"]["skipped"] == 1

        task = client.get("/tasks/gw-1", headers=auth_headers).json()
        assert task["source"] == "gateway"
        assert task["status"] == "completed"

        status = client.get("/sync/status", headers=auth_headers).json()
        assert status["enabled"] is True
        assert status["statistics"]["tasks"]["runs"] == 1
        assert status["statistics"]["earnings"]["skipped"] == 1
