"""
Upstream completion providers.

A provider turns a CompletionRequest into either a full completion or a
stream of text deltas. OpenAICompletionProvider talks to any
OpenAI-compatible endpoint; MockCompletionProvider serves a canned reply for
development without credentials.
"""

from __future__ import annotations

import asyncio
import re

from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import openai

from openai import AsyncOpenAI

from core.constants import (
    CHARS_PER_TOKEN,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL,
    DEFAULT_TEMPERATURE,
    MOCK_RESPONSE_TEMPLATE,
)
from integrations.errors import classify_upstream_error
from models.schemas.agents import TokenUsage
from utils.client_factory import OpenAIClientPool
from utils.logger import logger


@dataclass(frozen=True, slots=True)
class CompletionRequest:
    """Provider-agnostic completion parameters."""

    system_prompt: str
    user_message: str
    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS

    def to_messages(self) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": self.user_message},
        ]


@dataclass(frozen=True, slots=True)
class CompletionResult:
    """A finished non-streaming completion."""

    content: str
    usage: TokenUsage
    model: str
    is_mock: bool = False


class CompletionProvider(Protocol):
    """Request/response and streaming access to a completion model."""

    is_mock: bool

    async def complete(self, request: CompletionRequest) -> CompletionResult: ...

    def stream(self, request: CompletionRequest) -> AsyncIterator[str]: ...


# ============================================================================
# Usage normalization
# ============================================================================

_PROMPT_FIELDS = ("prompt_tokens", "promptTokens", "input_tokens")
_COMPLETION_FIELDS = ("completion_tokens", "completionTokens", "output_tokens")
_TOTAL_FIELDS = ("total_tokens", "totalTokens")


def _read_count(raw: Any, names: tuple[str, ...]) -> int | None:
    for name in names:
        value = raw.get(name) if isinstance(raw, Mapping) else getattr(raw, name, None)
        if isinstance(value, bool):
            continue
        if isinstance(value, int | float):
            return max(int(value), 0)
    return None


def normalize_usage(raw: Any) -> TokenUsage:
    """Normalize any known usage shape into TokenUsage.

    Accepts OpenAI usage objects, Responses-API style input/output counts,
    camelCase dicts and None. A missing total is derived from its parts.
    """
    if raw is None:
        return TokenUsage()

    prompt = _read_count(raw, _PROMPT_FIELDS) or 0
    completion = _read_count(raw, _COMPLETION_FIELDS) or 0
    total = _read_count(raw, _TOTAL_FIELDS)
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total if total is not None else prompt + completion,
    )


# ============================================================================
# OpenAI
# ============================================================================


class OpenAICompletionProvider:
    """Chat Completions provider over AsyncOpenAI."""

    is_mock = False

    def __init__(self, client: AsyncOpenAI) -> None:
        self._client = client

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        try:
            response = await self._client.chat.completions.create(
                model=request.model,
                messages=request.to_messages(),  # type: ignore[arg-type]
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
        except (openai.APIError, httpx.HTTPError) as e:
            raise classify_upstream_error(e) from e

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""

        return CompletionResult(
            content=content,
            usage=normalize_usage(response.usage),
            model=response.model or request.model,
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        """Yield text deltas. Closes the upstream response when the consumer stops early."""
        try:
            upstream = await self._client.chat.completions.create(
                model=request.model,
                messages=request.to_messages(),  # type: ignore[arg-type]
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                stream=True,
            )
        except (openai.APIError, httpx.HTTPError) as e:
            raise classify_upstream_error(e) from e

        try:
            async for event in upstream:
                if not event.choices:
                    continue
                delta = event.choices[0].delta.content
                if delta:
                    yield delta
        except (openai.APIError, httpx.HTTPError) as e:
            raise classify_upstream_error(e) from e
        finally:
            await upstream.close()


# ============================================================================
# Mock
# ============================================================================

_WORD_CHUNKS = re.compile(r"\S+\s*|\s+")


class MockCompletionProvider:
    """Deterministic canned completions for running without credentials."""

    is_mock = True

    def __init__(self, chunk_delay: float = 0.0, template: str = MOCK_RESPONSE_TEMPLATE) -> None:
        self.chunk_delay = chunk_delay
        self.template = template

    def render(self, request: CompletionRequest) -> str:
        return self.template.format(model=request.model)

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        content = self.render(request)
        prompt_chars = len(request.system_prompt) + len(request.user_message)
        prompt_tokens = -(-prompt_chars // CHARS_PER_TOKEN)
        completion_tokens = -(-len(content) // CHARS_PER_TOKEN)
        return CompletionResult(
            content=content,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            model=request.model,
            is_mock=True,
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        for piece in _WORD_CHUNKS.findall(self.render(request)):
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            yield piece


# ============================================================================
# Factory
# ============================================================================


class ProviderFactory:
    """Builds the provider for a resolved credential (None selects the mock)."""

    def __init__(self, clients: OpenAIClientPool | None, mock: MockCompletionProvider | None = None) -> None:
        self._clients = clients
        self._mock = mock or MockCompletionProvider()

    def __call__(self, api_key: str | None) -> CompletionProvider:
        if api_key is None:
            return self._mock
        if self._clients is None:
            logger.warning("No upstream client pool configured, serving mock completions")
            return self._mock
        return OpenAICompletionProvider(self._clients.get(api_key))


__all__ = [
    "CompletionProvider",
    "CompletionRequest",
    "CompletionResult",
    "MockCompletionProvider",
    "OpenAICompletionProvider",
    "ProviderFactory",
    "normalize_usage",
]
