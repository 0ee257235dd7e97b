"""Tests for the health check endpoint."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.constants import Settings


def test_health_without_database(client: TestClient) -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["version"] == "1.0.0-test"
    assert data["mock_mode"] is True
    assert data["database"] is None
    assert data["uptime_seconds"] >= 0
    assert {"agent", "api_key", "conversation", "static"} <= set(data["caches"])


def test_health_counts_usage_records(client: TestClient) -> None:
    client.post("/api/agents/test", json={"message": "Hi", "systemPrompt": "You are terse."})

    assert client.get("/api/health").json()["usage_records"] == 1


def test_health_is_not_rate_limited(client: TestClient, settings: Settings) -> None:
    settings.rate_limit_max_anonymous = 1

    for _ in range(3):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert "x-ratelimit-limit" not in response.headers


def test_health_degraded_when_database_unhealthy(app: FastAPI, client: TestClient) -> None:
    app.state.db_pool = MagicMock()
    unhealthy = {"healthy": False, "pool_size": 0, "pool_free": 0, "pool_used": 0, "error": "connection refused"}

    with patch("api.routes.health.check_pool_health", new=AsyncMock(return_value=unhealthy)):
        response = client.get("/api/health")

    app.state.db_pool = None
    data = response.json()
    assert data["status"] == "degraded"
    assert data["database"]["healthy"] is False
    assert data["database"]["error"] == "connection refused"
