"""
OpenAI client factory utilities.
Centralizes AsyncOpenAI client creation with consistent configuration.
"""

from __future__ import annotations

import hashlib

from typing import Any

import httpx

from openai import AsyncOpenAI

from utils.cache import BoundedCache
from utils.logger import logger

DEFAULT_CONNECT_TIMEOUT = 30.0  # Time to establish connection
DEFAULT_READ_TIMEOUT = 120.0  # Longest expected gap between streamed bytes
DEFAULT_WRITE_TIMEOUT = 30.0  # Time to send request
DEFAULT_POOL_TIMEOUT = 30.0  # Time to acquire connection from pool


async def _log_request(request: httpx.Request) -> None:
    logger.debug(f"HTTP Request: {request.method} {request.url}", http_request=True)


async def _log_response(response: httpx.Response) -> None:
    logger.debug(
        f"HTTP Response: {response.status_code} {response.request.url}",
        http_response=True,
        status=response.status_code,
    )


def create_http_client(
    enable_logging: bool = False,
    read_timeout: float | None = None,
) -> httpx.AsyncClient:
    """Create HTTP client with proper timeouts for streaming.

    Args:
        enable_logging: Log request lines and response statuses at debug level
        read_timeout: Read timeout in seconds

    Returns:
        Configured httpx.AsyncClient
    """
    timeout = httpx.Timeout(
        connect=DEFAULT_CONNECT_TIMEOUT,
        read=read_timeout if read_timeout is not None else DEFAULT_READ_TIMEOUT,
        write=DEFAULT_WRITE_TIMEOUT,
        pool=DEFAULT_POOL_TIMEOUT,
    )

    if enable_logging:
        return httpx.AsyncClient(
            timeout=timeout,
            event_hooks={"request": [_log_request], "response": [_log_response]},
        )
    return httpx.AsyncClient(timeout=timeout)


def create_openai_client(
    api_key: str,
    base_url: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AsyncOpenAI:
    """Create AsyncOpenAI client with consistent configuration.

    Args:
        api_key: OpenAI API key
        base_url: Optional base URL for OpenAI-compatible endpoints
        http_client: Shared httpx client (connection pooling across keys)
    """
    kwargs: dict[str, Any] = {"api_key": api_key, "http_client": http_client}
    if base_url:
        kwargs["base_url"] = base_url
    return AsyncOpenAI(**kwargs)


def _client_cache_key(api_key: str, base_url: str | None) -> str:
    digest = hashlib.sha256(f"{base_url or ''}|{api_key}".encode()).hexdigest()[:16]
    return f"openai-client:{digest}"


class OpenAIClientPool:
    """Per-credential AsyncOpenAI clients, memoized in a bounded cache.

    All clients share one httpx connection pool, so evicting a client
    only drops a thin wrapper. Keys are hashed before use as cache keys.
    """

    def __init__(
        self,
        cache: BoundedCache,
        http_client: httpx.AsyncClient,
        base_url: str | None = None,
    ) -> None:
        self._cache = cache
        self._http_client = http_client
        self._base_url = base_url

    def get(self, api_key: str) -> AsyncOpenAI:
        key = _client_cache_key(api_key, self._base_url)
        client = self._cache.get(key)
        if client is None:
            client = create_openai_client(api_key, base_url=self._base_url, http_client=self._http_client)
            self._cache.set(key, client)
        return client  # type: ignore[no-any-return]

    async def aclose(self) -> None:
        self._cache.delete_pattern(r"^openai-client:")
        await self._http_client.aclose()
