"""Rate limiting middleware with a fixed window per client identity.

Provides:
- Per-user (authenticated) and per-IP (anonymous) tracking with separate ceilings
- Windows stored in a BoundedCache, so tracked identities stay bounded
- Health and metrics endpoint exemption
- X-RateLimit-* headers on admitted responses, Retry-After on rejections

Concurrent requests from one identity can both read a window before either
writes it back, so counts may undershoot slightly under load.
"""

from __future__ import annotations

import math
import time

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from core.constants import (
    ERROR_RATE_LIMITED,
    RATE_LIMIT_CACHE_MAX_SIZE,
    RATE_LIMIT_CACHE_TTL,
    Settings,
    get_settings,
)
from utils.cache import BoundedCache
from utils.logger import logger
from utils.metrics import rate_limit_rejections_total

# Paths exempt from rate limiting
EXEMPT_PATHS: set[str] = {
    "/api/health",
}
EXEMPT_PREFIXES: tuple[str, ...] = ("/metrics",)


def get_client_identifier(request: Request) -> str:
    """Get identifier for rate limiting: user id if authenticated, else IP.

    Reads the user set on request.state by the auth context middleware.
    """
    user = getattr(request.state, "user", None)
    if user:
        return f"user:{user.id}"

    # X-Forwarded-For first hop wins (behind proxy/load balancer)
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return f"ip:{first_hop}"

    client_ip = request.client.host if request.client and request.client.host else "unknown"
    return f"ip:{client_ip}"


def _is_authenticated(request: Request) -> bool:
    return bool(getattr(request.state, "user", None))


@dataclass
class RateLimitConfig:
    """Rate limit behavior for the middleware."""

    window_seconds: float = 60.0
    max_requests_authenticated: int = 120
    max_requests_anonymous: int = 30
    status_code: int = 429
    message: str = ERROR_RATE_LIMITED
    headers: bool = True
    skip: Callable[[Request], bool] | None = None
    key_func: Callable[[Request], str] = get_client_identifier

    @classmethod
    def from_settings(cls, settings: Settings) -> RateLimitConfig:
        return cls(
            window_seconds=settings.rate_limit_window_seconds,
            max_requests_authenticated=settings.rate_limit_max_authenticated,
            max_requests_anonymous=settings.rate_limit_max_anonymous,
            status_code=settings.rate_limit_status_code,
            headers=settings.rate_limit_headers,
        )

    def max_requests_for(self, request: Request) -> int:
        if _is_authenticated(request):
            return self.max_requests_authenticated
        return self.max_requests_anonymous


@dataclass(frozen=True, slots=True)
class RateWindow:
    """Request count for one identity within the current window."""

    count: int
    reset_at: float  # unix seconds


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Outcome of one rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int

    def headers(self) -> dict[str, str]:
        """Build rate limit response headers."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


class FixedWindowRateLimiter:
    """In-memory fixed window rate limiter.

    Each identity gets a RateWindow that resets once its window elapses.
    Windows live in a dedicated BoundedCache used as a bounded map: every
    write carries TTL = window, so idle identities age out on their own.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        cache: BoundedCache | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            window_seconds: Window length in seconds
            cache: Backing store for windows (default: dedicated rate_limit cache)
            clock: Wall-clock time source in unix seconds
        """
        self.window_seconds = window_seconds
        self._clock = clock
        self.cache = cache or BoundedCache(
            name="rate_limit",
            default_ttl=RATE_LIMIT_CACHE_TTL,
            max_size=RATE_LIMIT_CACHE_MAX_SIZE,
            max_memory_size=None,
            cleanup_interval=window_seconds,
            clock=clock,
        )

    def start(self) -> None:
        """Start the backing cache's expiry sweep."""
        self.cache.start_cleanup()

    async def stop(self) -> None:
        """Stop the backing cache's expiry sweep."""
        await self.cache.stop_cleanup()

    def check(self, identity: str, max_requests: int) -> RateLimitDecision:
        """Count one request for identity and decide whether it is admitted.

        Args:
            identity: Client identifier (user:id or ip:address)
            max_requests: Ceiling for this request's window
        """
        now = self._clock()
        window = self.cache.get(identity)
        if window is None or now > window.reset_at:
            window = RateWindow(count=0, reset_at=now + self.window_seconds)

        window = RateWindow(count=window.count + 1, reset_at=window.reset_at)
        self.cache.set(identity, window, ttl=self.window_seconds)

        allowed = window.count <= max_requests
        return RateLimitDecision(
            allowed=allowed,
            limit=max_requests,
            remaining=max(0, max_requests - window.count),
            reset_at=window.reset_at,
            retry_after=max(1, math.ceil(window.reset_at - now)),
        )

    def reset(self, identity: str | None = None) -> None:
        """Forget one identity's window, or all of them."""
        if identity is None:
            self.cache.clear()
        else:
            self.cache.delete(identity)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware for rate limiting requests."""

    def __init__(
        self,
        app: Callable[..., Any],
        rate_limiter: FixedWindowRateLimiter,
        config: RateLimitConfig | None = None,
    ) -> None:
        super().__init__(app)
        self._rate_limiter = rate_limiter
        self._config = config

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Process request through rate limiter."""
        path = request.url.path
        settings = get_settings()

        if path in EXEMPT_PATHS or path.startswith(EXEMPT_PREFIXES):
            return await call_next(request)

        if not settings.rate_limit_enabled:
            return await call_next(request)

        config = self._config or RateLimitConfig.from_settings(settings)
        if config.skip is not None and config.skip(request):
            return await call_next(request)

        identity = config.key_func(request)
        decision = self._rate_limiter.check(identity, config.max_requests_for(request))

        if not decision.allowed:
            logger.warning(f"Rate limit exceeded for {identity} (path: {path})", retry_after=decision.retry_after)
            rate_limit_rejections_total.labels(identity_kind=identity.split(":", 1)[0]).inc()
            response = JSONResponse(
                status_code=config.status_code,
                content={"error": config.message, "retry_after": decision.retry_after},
            )
            if config.headers:
                response.headers.update(decision.headers())
            response.headers["Retry-After"] = str(decision.retry_after)
            return response

        result = await call_next(request)

        if config.headers:
            result.headers.update(decision.headers())

        return result
