from __future__ import annotations

import time

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from api.middleware.auth import AuthContextMiddleware
from api.middleware.exception_handlers import register_exception_handlers
from api.middleware.rate_limiter import FixedWindowRateLimiter, RateLimitMiddleware
from api.middleware.request_context import RequestContextMiddleware
from api.routes import router as api_router
from api.services.agent_test_service import AgentTestService
from api.services.storage import InMemoryStorage, PostgresStorage, Storage
from api.services.token_usage import TokenUsageLog
from core.constants import get_settings
from integrations.completion_provider import ProviderFactory
from utils.cache import CacheRegistry
from utils.client_factory import OpenAIClientPool, create_http_client
from utils.db_utils import check_pool_health, create_database_pool, graceful_pool_close
from utils.logger import configure_uvicorn_logging, logger

# Settings are loaded via Pydantic Settings with environment-specific file support
# (.env, .env.{APP_ENV}, .env.local) - no manual dotenv loading needed
settings = get_settings()

if settings.debug:
    from core.constants import _get_env_files

    logger.info(f"Env files: {[f.name for f in _get_env_files()]}")
    logger.info(
        f"Settings: app_env={settings.app_env}, mock_mode={settings.mock_mode}, "
        f"persistence={settings.persistence_enabled}"
    )

# Configure uvicorn logging at module level to ensure workers use it
configure_uvicorn_logging()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build process-wide state, tear it down on shutdown."""
    current = get_settings()
    app.state.started_at = time.time()

    # Named caches (agent, api_key, conversation, static, ...)
    caches = CacheRegistry()
    caches.start_all()
    app.state.caches = caches

    app.state.usage_log = TokenUsageLog()

    # Persistence is optional: without DATABASE_URL everything stays in memory
    app.state.db_pool = None
    storage: Storage
    if current.persistence_enabled:
        app.state.db_pool = await create_database_pool(
            dsn=current.database_url,
            min_size=current.db_pool_min_size,
            max_size=current.db_pool_max_size,
            command_timeout=current.db_command_timeout,
            connection_timeout=current.db_connection_timeout,
        )
        health = await check_pool_health(app.state.db_pool)
        if not health["healthy"]:
            logger.error("Database health check failed during startup")
            raise RuntimeError("Database connection failed")
        logger.info(f"Database pool healthy: {health}")
        storage = PostgresStorage(app.state.db_pool)
    else:
        logger.info("DATABASE_URL not set, using in-memory storage")
        storage = InMemoryStorage()
    app.state.storage = storage

    # Upstream clients share one httpx pool; per-key wrappers live in the static cache
    http_client = create_http_client(enable_logging=current.debug, read_timeout=current.http_read_timeout)
    clients = OpenAIClientPool(caches.static, http_client, base_url=current.openai_base_url)
    app.state.openai_clients = clients

    app.state.agent_test_service = AgentTestService(
        storage=storage,
        caches=caches,
        usage_log=app.state.usage_log,
        provider_factory=ProviderFactory(clients),
        settings=current,
    )

    app.state.rate_limiter.start()
    logger.info(f"Agent Workbench started (env={current.app_env}, mock_mode={current.mock_mode})")

    try:
        yield
    finally:
        logger.info("Initiating graceful shutdown sequence")

        # Phase 1: Stop background cache sweeps
        await app.state.rate_limiter.stop()
        await caches.stop_all()

        # Phase 2: Close upstream HTTP connections
        await clients.aclose()

        # Phase 3: Gracefully close database pool
        if app.state.db_pool is not None:
            await graceful_pool_close(app.state.db_pool, timeout=current.shutdown_timeout)

        logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Build the FastAPI application with middleware, handlers and routes."""
    app = FastAPI(
        title="Agent Workbench API",
        description="""
## Agent Workbench API

Test AI agent configurations (system prompt, model, temperature, max tokens)
against an OpenAI-compatible completion API.

### Features
- **Agent testing**: one-shot JSON responses or newline-delimited JSON streams
- **Usage accounting**: per-user token usage records
- **Rate limiting**: fixed window per user (authenticated) or IP (anonymous)
- **Caching**: named bounded TTL caches for agents, keys and conversations

### Authentication
Send a JWT bearer token. In development, localhost requests without a token
act as the default user.
""",
        version=settings.app_version,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Health", "description": "Health check endpoint for monitoring"},
            {"name": "Agents", "description": "Agent test runs, streaming and credential verification"},
            {"name": "Usage", "description": "Token usage records and summaries"},
            {"name": "Cache", "description": "Cache statistics and invalidation"},
        ],
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Rate limiter state outlives requests; the middleware and the cache routes share it
    app.state.rate_limiter = FixedWindowRateLimiter(window_seconds=settings.rate_limit_window_seconds)

    # Register global exception handlers for consistent error responses
    register_exception_handlers(app)

    # Middleware is executed in reverse order of registration (last added = first executed):
    # 1. Request context (request ID, timing)
    # 2. Auth context (request.state.user)
    # 3. Rate limiter (needs the resolved user)
    # 4. CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )
    app.add_middleware(RateLimitMiddleware, rate_limiter=app.state.rate_limiter)
    app.add_middleware(AuthContextMiddleware)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(api_router, prefix="/api")

    # Prometheus scrape endpoint
    app.mount("/metrics", make_asgi_app())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
        reload_dirs=["src"],
        log_config=None,
    )
