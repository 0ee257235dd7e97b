from __future__ import annotations

from typing import Annotated

import asyncpg

from fastapi import Depends, Request

from api.middleware.rate_limiter import FixedWindowRateLimiter
from api.services.agent_test_service import AgentTestService
from api.services.token_usage import TokenUsageLog
from core.constants import Settings, get_settings
from utils.cache import CacheRegistry


def get_app_settings() -> Settings:
    """Provide application settings via dependency injection.

    In development with CONFIG_HOT_RELOAD=true, settings are reloaded
    on each request to pick up .env file changes without restart.

    Usage in routes:
        @router.get("/example")
        async def example(settings: AppSettings):
            return {"debug": settings.debug}
    """
    return get_settings()


async def get_db(request: Request) -> asyncpg.Pool | None:
    """Get database connection pool from application state (None without persistence)."""
    return getattr(request.app.state, "db_pool", None)


def get_caches(request: Request) -> CacheRegistry:
    """Get the named cache registry built at startup."""
    return request.app.state.caches


def get_usage_log(request: Request) -> TokenUsageLog:
    return request.app.state.usage_log


def get_agent_test_service(request: Request) -> AgentTestService:
    return request.app.state.agent_test_service


def get_rate_limiter(request: Request) -> FixedWindowRateLimiter:
    return request.app.state.rate_limiter


# Type aliases for cleaner route signatures
DB = Annotated[asyncpg.Pool | None, Depends(get_db)]
Caches = Annotated[CacheRegistry, Depends(get_caches)]
UsageLog = Annotated[TokenUsageLog, Depends(get_usage_log)]
AgentTests = Annotated[AgentTestService, Depends(get_agent_test_service)]
RateLimiter = Annotated[FixedWindowRateLimiter, Depends(get_rate_limiter)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
