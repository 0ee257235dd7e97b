from unittest.mock import AsyncMock, Mock, patch

import pytest

from fastapi.testclient import TestClient

from api.main import create_app, lifespan
from api.middleware.rate_limiter import FixedWindowRateLimiter
from api.services.agent_test_service import AgentTestService
from api.services.auth_service import AuthService
from api.services.storage import InMemoryStorage, PostgresStorage
from api.services.token_usage import TokenUsageLog
from core.constants import Settings
from models.api_models import UserInfo
from utils.cache import CacheRegistry


def _mock_app() -> Mock:
    mock_app = Mock()
    mock_app.state = Mock()
    mock_app.state.rate_limiter = FixedWindowRateLimiter()
    return mock_app


@pytest.mark.asyncio
async def test_lifespan_without_database() -> None:
    """Without DATABASE_URL the app runs on in-memory storage."""
    mock_app = _mock_app()

    with patch("api.main.create_database_pool", new_callable=AsyncMock) as mock_create_db:
        async with lifespan(mock_app):
            mock_create_db.assert_not_called()
            assert mock_app.state.db_pool is None
            assert isinstance(mock_app.state.storage, InMemoryStorage)
            assert isinstance(mock_app.state.caches, CacheRegistry)
            assert isinstance(mock_app.state.usage_log, TokenUsageLog)
            assert isinstance(mock_app.state.agent_test_service, AgentTestService)
            assert mock_app.state.rate_limiter.cache.cleanup_running
            assert mock_app.state.started_at > 0

    assert not mock_app.state.rate_limiter.cache.cleanup_running


@pytest.mark.asyncio
async def test_lifespan_startup_with_database(settings: Settings) -> None:
    """Test successful startup and shutdown against a database pool."""
    settings.database_url = "postgresql://test@localhost/workbench"
    mock_app = _mock_app()

    with (
        patch("api.main.create_database_pool", new_callable=AsyncMock) as mock_create_db,
        patch("api.main.check_pool_health", new_callable=AsyncMock) as mock_check_health,
        patch("api.main.graceful_pool_close", new_callable=AsyncMock) as mock_close_db,
    ):
        mock_check_health.return_value = {"healthy": True}
        mock_db_pool = Mock()
        mock_create_db.return_value = mock_db_pool

        async with lifespan(mock_app):
            mock_create_db.assert_called_once()
            assert mock_create_db.call_args.kwargs["dsn"] == "postgresql://test@localhost/workbench"
            assert mock_app.state.db_pool == mock_db_pool
            assert isinstance(mock_app.state.storage, PostgresStorage)

        # Verify shutdown calls handled in finally
        mock_close_db.assert_awaited_once_with(mock_db_pool, timeout=settings.shutdown_timeout)


@pytest.mark.asyncio
async def test_lifespan_startup_db_failure(settings: Settings) -> None:
    """Test startup fails if DB is unhealthy."""
    settings.database_url = "postgresql://test@localhost/workbench"
    mock_app = _mock_app()

    with (
        patch("api.main.create_database_pool", new_callable=AsyncMock),
        patch("api.main.check_pool_health", new_callable=AsyncMock) as mock_check_health,
    ):
        mock_check_health.return_value = {"healthy": False}

        with pytest.raises(RuntimeError, match="Database connection failed"):
            async with lifespan(mock_app):
                pass


class TestCreateApp:
    def test_each_app_has_its_own_rate_limiter(self) -> None:
        first = create_app()
        second = create_app()

        assert first.state.rate_limiter is not second.state.rate_limiter

    def test_request_id_and_rate_limit_headers(self) -> None:
        with TestClient(create_app()) as client:
            response = client.get("/api/cache/stats")

        assert response.status_code == 200
        assert response.headers["x-request-id"].startswith("req_")
        assert response.headers["x-ratelimit-limit"] == "30"
        assert response.headers["x-ratelimit-remaining"] == "29"

    def test_rate_limit_rejects_over_ceiling(self, settings: Settings) -> None:
        settings.rate_limit_max_anonymous = 2

        with TestClient(create_app()) as client:
            statuses = [client.get("/api/cache/stats").status_code for _ in range(3)]
            rejected = client.get("/api/cache/stats")

        assert statuses == [200, 200, 429]
        assert rejected.status_code == 429
        assert int(rejected.headers["retry-after"]) >= 1
        assert rejected.json()["error"] == "Rate limit exceeded. Please slow down your requests."

    def test_authenticated_callers_get_higher_ceiling(self, settings: Settings) -> None:
        token = AuthService(settings).issue_access_token(UserInfo(id="7"))

        with TestClient(create_app()) as client:
            response = client.get("/api/cache/stats", headers={"Authorization": f"Bearer {token}"})

        assert response.headers["x-ratelimit-limit"] == "120"

    def test_metrics_endpoint(self) -> None:
        with TestClient(create_app()) as client:
            response = client.get("/metrics/")

        assert response.status_code == 200
        assert "agentworkbench_streams_active" in response.text

    def test_openapi_schema(self) -> None:
        with TestClient(create_app()) as client:
            response = client.get("/api/openapi.json")

        assert response.status_code == 200
        paths = response.json()["paths"]
        assert {"/api/agents/test", "/api/agents/test/stream", "/api/usage", "/api/health"} <= set(paths)
