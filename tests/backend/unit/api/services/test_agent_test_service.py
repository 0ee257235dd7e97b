"""Tests for AgentTestService: config resolution, streaming relay and retries."""

from __future__ import annotations

import asyncio

from collections.abc import AsyncIterator, Callable
from typing import Any
from unittest.mock import AsyncMock, call

import httpx
import openai
import pytest

from api.services.agent_test_service import AgentTestService, error_chunk
from api.services.storage import InMemoryStorage, StoredAgent
from api.services.token_usage import TokenUsageLog
from core.constants import (
    AGENT_DEFAULT_MAX_TOKENS,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL,
    VERIFY_SUCCESS_MESSAGE,
    Settings,
)
from integrations.completion_provider import CompletionResult, ProviderFactory
from integrations.errors import CompletionError, CompletionErrorKind
from models.api_models import UserInfo
from models.error_models import ErrorCode
from models.schemas.agents import AgentTestRequest, ContentChunk, DoneChunk, ErrorChunk, TokenUsage
from utils.cache import CacheRegistry

ServiceFactory = Callable[..., AgentTestService]
ProviderBuilder = Callable[..., Any]

USER = UserInfo(id="1")

STORED_AGENT = StoredAgent(
    id=5,
    user_id="1",
    name="Support",
    model="gpt-4o-mini",
    temperature=0.3,
    max_tokens=None,
    system_prompt="You answer support questions.",
)


def _openai_error(cls: type[openai.APIStatusError], status: int, message: str = "upstream said no") -> Exception:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    return cls(message, response=httpx.Response(status, request=request), body=None)


async def collect(chunks: AsyncIterator[Any]) -> list[Any]:
    return [chunk async for chunk in chunks]


class SlowProvider:
    """Yields one chunk, then stalls."""

    is_mock = False

    def __init__(self) -> None:
        self.stream_closed = False

    async def complete(self, request: Any) -> Any:
        raise NotImplementedError

    async def stream(self, request: Any) -> AsyncIterator[str]:
        try:
            yield "Hello"
            await asyncio.sleep(5.0)
            yield "never"
        finally:
            self.stream_closed = True


class FailingWriteStorage(InMemoryStorage):
    async def create_message(self, *args: Any, **kwargs: Any) -> Any:
        raise OSError("disk full")


class FailingReadStorage(InMemoryStorage):
    async def get_agent(self, agent_id: int) -> Any:
        raise OSError("connection reset by peer")


@pytest.fixture
def storage() -> InMemoryStorage:
    storage = InMemoryStorage()
    storage.add_agent(STORED_AGENT)
    return storage


@pytest.fixture
def usage_log() -> TokenUsageLog:
    return TokenUsageLog()


@pytest.fixture
def make_service(storage: InMemoryStorage, usage_log: TokenUsageLog, settings: Settings) -> ServiceFactory:
    def _make(provider: Any, *, storage_override: Any = None, sleep: Any = None) -> AgentTestService:
        return AgentTestService(
            storage=storage_override if storage_override is not None else storage,
            caches=CacheRegistry(),
            usage_log=usage_log,
            provider_factory=lambda api_key: provider,
            settings=settings,
            sleep=sleep or AsyncMock(),
        )

    return _make


def _request(**overrides: Any) -> AgentTestRequest:
    fields: dict[str, Any] = {"message": "Hi", "system_prompt": "You are terse."}
    fields.update(overrides)
    return AgentTestRequest(**fields)


class TestResolveConfig:
    @pytest.mark.asyncio
    async def test_inline_config_defaults(self, make_service: ServiceFactory, fake_provider: ProviderBuilder) -> None:
        service = make_service(fake_provider())

        config = await service.resolve_config(_request())

        assert config.system_prompt == "You are terse."
        assert config.model == DEFAULT_MODEL
        assert config.temperature == 0.7
        assert config.max_tokens == DEFAULT_MAX_TOKENS
        assert config.agent_id is None

    @pytest.mark.asyncio
    async def test_stored_agent_values(self, make_service: ServiceFactory, fake_provider: ProviderBuilder) -> None:
        service = make_service(fake_provider())

        config = await service.resolve_config(AgentTestRequest(agent_id=5, message="Hi"))

        assert config.system_prompt == "You answer support questions."
        assert config.model == "gpt-4o-mini"
        assert config.temperature == 0.3
        assert config.max_tokens == AGENT_DEFAULT_MAX_TOKENS
        assert config.agent_id == 5

    @pytest.mark.asyncio
    async def test_inline_overrides_stored_agent(self, make_service: ServiceFactory, fake_provider: ProviderBuilder) -> None:
        service = make_service(fake_provider())

        config = await service.resolve_config(
            _request(agent_id=5, model="gpt-4.1", temperature=0.0, max_tokens=64),
        )

        assert config.system_prompt == "You are terse."
        assert config.model == "gpt-4.1"
        assert config.temperature == 0.0
        assert config.max_tokens == 64
        assert config.agent_id == 5

    @pytest.mark.asyncio
    async def test_agent_not_found(self, make_service: ServiceFactory, fake_provider: ProviderBuilder) -> None:
        service = make_service(fake_provider())

        with pytest.raises(CompletionError) as exc_info:
            await service.resolve_config(_request(agent_id=99))

        assert exc_info.value.kind is CompletionErrorKind.AGENT_NOT_FOUND
        assert exc_info.value.message == "Agent 99 not found"
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("prompt", [None, "", "   "])
    async def test_missing_system_prompt(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, prompt: str | None) -> None:
        service = make_service(fake_provider())

        with pytest.raises(CompletionError) as exc_info:
            await service.resolve_config(_request(system_prompt=prompt))

        assert exc_info.value.kind is CompletionErrorKind.MISSING_SYSTEM_PROMPT
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_message(self, make_service: ServiceFactory, fake_provider: ProviderBuilder) -> None:
        service = make_service(fake_provider())

        with pytest.raises(CompletionError) as exc_info:
            await service.resolve_config(_request(message="  "))

        assert exc_info.value.kind is CompletionErrorKind.MISSING_MESSAGE


class TestResolveApiKey:
    @pytest.mark.asyncio
    async def test_user_key_wins(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, storage: InMemoryStorage, settings: Settings) -> None:
        settings.openai_api_key = "sk-configured"
        storage.save_api_key("1", "sk-user")
        service = make_service(fake_provider())

        assert await service.resolve_api_key(USER) == "sk-user"

    @pytest.mark.asyncio
    async def test_configured_key_fallback(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, settings: Settings) -> None:
        settings.openai_api_key = "sk-configured"
        service = make_service(fake_provider())

        assert await service.resolve_api_key(USER) == "sk-configured"
        assert await service.resolve_api_key(None) == "sk-configured"

    @pytest.mark.asyncio
    async def test_mock_mode_returns_none(self, make_service: ServiceFactory, fake_provider: ProviderBuilder) -> None:
        service = make_service(fake_provider())

        assert await service.resolve_api_key(USER) is None

    @pytest.mark.asyncio
    async def test_missing_key(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, settings: Settings) -> None:
        settings.mock_mode = False
        service = make_service(fake_provider())

        with pytest.raises(CompletionError) as exc_info:
            await service.resolve_api_key(USER)

        assert exc_info.value.kind is CompletionErrorKind.MISSING_API_KEY
        assert exc_info.value.requires_credentials is True

    @pytest.mark.asyncio
    async def test_storage_failure_falls_back(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, settings: Settings) -> None:
        settings.openai_api_key = "sk-configured"
        storage = InMemoryStorage()
        storage.get_api_key = AsyncMock(side_effect=OSError("connection reset"))  # type: ignore[method-assign]
        service = make_service(fake_provider(), storage_override=storage)

        assert await service.resolve_api_key(USER) == "sk-configured"


class TestStreamRelay:
    @pytest.mark.asyncio
    async def test_content_then_done(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, usage_log: TokenUsageLog) -> None:
        provider = fake_provider(["Hello", " world", "!"])
        service = make_service(provider)

        chunks = await collect(service.stream_agent_test(_request()))

        assert [c.content for c in chunks[:3]] == ["Hello", " world", "!"]
        assert all(isinstance(c, ContentChunk) for c in chunks[:3])
        assert len(chunks) == 4
        done = chunks[3]
        assert isinstance(done, DoneChunk)
        assert done.done is True
        assert done.timing.total >= 0
        assert done.timing.streaming >= 0
        assert provider.stream_closed is True

        records = usage_log.records()
        assert len(records) == 1
        # "You are terse." + "Hi" = 16 chars, "Hello world!" = 12 chars
        assert records[0].prompt_tokens == 4
        assert records[0].completion_tokens == 3
        assert records[0].total_tokens == 7
        assert records[0].estimated is True

    @pytest.mark.asyncio
    async def test_empty_deltas_skipped(self, make_service: ServiceFactory, fake_provider: ProviderBuilder) -> None:
        service = make_service(fake_provider(["", "a", ""]))

        chunks = await collect(service.stream_agent_test(_request()))

        assert [c.content for c in chunks] == ["a", ""]
        assert chunks[-1].done is True

    @pytest.mark.asyncio
    async def test_error_before_first_chunk(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, usage_log: TokenUsageLog) -> None:
        provider = fake_provider([], fail_after=0, error=_openai_error(openai.RateLimitError, 429))
        service = make_service(provider)

        chunks = await collect(service.stream_agent_test(_request()))

        assert len(chunks) == 1
        assert isinstance(chunks[0], ErrorChunk)
        assert chunks[0].code == ErrorCode.EXTERNAL_RATE_LIMITED.value
        assert chunks[0].error == "OpenAI API rate limit exceeded. Please try again later."
        assert len(usage_log) == 0

    @pytest.mark.asyncio
    async def test_upstream_auth_error_requires_credentials(self, make_service: ServiceFactory, fake_provider: ProviderBuilder) -> None:
        provider = fake_provider([], fail_after=0, error=_openai_error(openai.AuthenticationError, 401))
        service = make_service(provider)

        chunks = await collect(service.stream_agent_test(_request()))

        assert chunks[0].requires_credentials is True
        assert chunks[0].code == ErrorCode.UPSTREAM_AUTH.value

    @pytest.mark.asyncio
    async def test_mid_stream_failure(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, usage_log: TokenUsageLog) -> None:
        provider = fake_provider(["abcd", "efgh"], fail_after=1, error=RuntimeError("boom"))
        service = make_service(provider)

        chunks = await collect(service.stream_agent_test(_request()))

        assert [type(c) for c in chunks] == [ContentChunk, ErrorChunk]
        assert chunks[1].error == "OpenAI API error: boom"
        assert chunks[1].code == ErrorCode.OPENAI_ERROR.value
        # Partial output still counts
        assert usage_log.records()[0].completion_tokens == 1

    @pytest.mark.asyncio
    async def test_idle_timeout(self, make_service: ServiceFactory, settings: Settings, usage_log: TokenUsageLog) -> None:
        settings.stream_idle_timeout = 0.05
        provider = SlowProvider()
        service = make_service(provider)

        chunks = await collect(service.stream_agent_test(_request()))

        assert chunks[0].content == "Hello"
        assert isinstance(chunks[1], ErrorChunk)
        assert chunks[1].code == ErrorCode.STREAM_IDLE_TIMEOUT.value
        assert len(chunks) == 2
        assert provider.stream_closed is True
        assert len(usage_log) == 1

    @pytest.mark.asyncio
    async def test_total_duration_timeout(self, make_service: ServiceFactory, settings: Settings) -> None:
        settings.stream_max_duration = 0.05
        service = make_service(SlowProvider())

        chunks = await collect(service.stream_agent_test(_request()))

        assert chunks[-1].code == ErrorCode.STREAM_TIMEOUT.value
        assert chunks[-1].error == "Response took too long to complete"

    @pytest.mark.asyncio
    async def test_consumer_close_records_partial_usage(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, usage_log: TokenUsageLog) -> None:
        provider = fake_provider(["Hello", " world", "!"])
        service = make_service(provider)

        stream = service.stream_agent_test(_request())
        first = await anext(stream)
        await stream.aclose()

        assert first.content == "Hello"
        assert provider.stream_closed is True
        records = usage_log.records()
        assert len(records) == 1
        assert records[0].completion_tokens == 2
        assert records[0].estimated is True

    @pytest.mark.asyncio
    async def test_config_error_yields_lone_error_chunk(self, make_service: ServiceFactory, fake_provider: ProviderBuilder) -> None:
        provider = fake_provider(["never"])
        service = make_service(provider)

        chunks = await collect(service.stream_agent_test(_request(system_prompt=None)))

        assert len(chunks) == 1
        assert chunks[0].code == ErrorCode.MISSING_SYSTEM_PROMPT.value
        assert chunks[0].error == "Agent system prompt is required"
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_storage_failure_before_streaming_yields_error_chunk(
        self, make_service: ServiceFactory, fake_provider: ProviderBuilder
    ) -> None:
        provider = fake_provider(["never"])
        service = make_service(provider, storage_override=FailingReadStorage())

        chunks = await collect(service.stream_agent_test(_request(agent_id=5), USER))

        assert len(chunks) == 1
        assert isinstance(chunks[0], ErrorChunk)
        assert chunks[0].code == ErrorCode.OPENAI_ERROR.value
        assert chunks[0].error == "OpenAI API error: connection reset by peer"
        assert chunks[0].done is True
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_open_stream_raises_before_relay(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, settings: Settings) -> None:
        settings.mock_mode = False
        service = make_service(fake_provider(["never"]))

        with pytest.raises(CompletionError) as exc_info:
            await service.open_stream(_request(), USER)

        assert exc_info.value.kind is CompletionErrorKind.MISSING_API_KEY

    @pytest.mark.asyncio
    async def test_persists_conversation_for_user(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, storage: InMemoryStorage) -> None:
        service = make_service(fake_provider(["Hi ", "there"]))

        chunks = await collect(service.stream_agent_test(_request(agent_id=5, system_prompt=None), USER))

        assert chunks[-1].conversation_id == 1
        assert storage.conversations[1].agent_id == 5
        assert storage.conversations[1].title == "Hi"
        assert [(m.role, m.content) for m in storage.messages] == [("user", "Hi"), ("assistant", "Hi there")]

    @pytest.mark.asyncio
    async def test_reuses_owned_conversation(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, storage: InMemoryStorage) -> None:
        existing = await storage.create_conversation("1", None, "Earlier")
        other = await storage.create_conversation("2", None, "Not yours")
        service = make_service(fake_provider(["ok"]))

        owned = await collect(service.stream_agent_test(_request(conversation_id=existing.id), USER))
        foreign = await collect(service.stream_agent_test(_request(conversation_id=other.id), USER))

        assert owned[-1].conversation_id == existing.id
        assert foreign[-1].conversation_id not in (existing.id, other.id)

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_fail_stream(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, usage_log: TokenUsageLog) -> None:
        service = make_service(fake_provider(["ok"]), storage_override=FailingWriteStorage())

        chunks = await collect(service.stream_agent_test(_request(), USER))

        assert isinstance(chunks[-1], DoneChunk)
        assert chunks[-1].conversation_id is None
        assert len(usage_log) == 1

    @pytest.mark.asyncio
    async def test_anonymous_run_not_persisted(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, storage: InMemoryStorage) -> None:
        service = make_service(fake_provider(["ok"]))

        chunks = await collect(service.stream_agent_test(_request()))

        assert chunks[-1].conversation_id is None
        assert storage.messages == []


class TestNonStreaming:
    @pytest.mark.asyncio
    async def test_returns_provider_usage(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, usage_log: TokenUsageLog) -> None:
        usage = TokenUsage(prompt_tokens=12, completion_tokens=5, total_tokens=17)
        provider = fake_provider(complete_results=[CompletionResult(content="Hello!", usage=usage, model="gpt-4o")])
        service = make_service(provider)

        result = await service.test_agent(_request(), USER)

        assert result.content == "Hello!"
        assert result.usage == usage
        assert result.is_mock is False
        record = usage_log.records()[0]
        assert record.total_tokens == 17
        assert record.user_id == "1"
        assert record.estimated is False

    @pytest.mark.asyncio
    async def test_retries_with_linear_backoff(self, make_service: ServiceFactory, fake_provider: ProviderBuilder) -> None:
        sleep = AsyncMock()
        provider = fake_provider(
            complete_results=[
                CompletionError(CompletionErrorKind.UPSTREAM_SERVER),
                CompletionError(CompletionErrorKind.UPSTREAM_RATE_LIMITED),
                CompletionResult(content="ok", usage=TokenUsage(), model="gpt-4o"),
            ]
        )
        service = make_service(provider, sleep=sleep)

        result = await service.test_agent(_request())

        assert result.content == "ok"
        assert provider.complete_calls == 3
        assert sleep.await_args_list == [call(1.0), call(2.0)]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_service: ServiceFactory, fake_provider: ProviderBuilder) -> None:
        provider = fake_provider(
            complete_results=[CompletionError(CompletionErrorKind.UPSTREAM_SERVER) for _ in range(3)],
        )
        service = make_service(provider)

        with pytest.raises(CompletionError) as exc_info:
            await service.test_agent(_request())

        assert exc_info.value.kind is CompletionErrorKind.UPSTREAM_SERVER
        assert provider.complete_calls == 3

    @pytest.mark.asyncio
    async def test_non_retryable_error_not_retried(self, make_service: ServiceFactory, fake_provider: ProviderBuilder, usage_log: TokenUsageLog) -> None:
        sleep = AsyncMock()
        provider = fake_provider(complete_results=[CompletionError(CompletionErrorKind.UPSTREAM_AUTH)])
        service = make_service(provider, sleep=sleep)

        with pytest.raises(CompletionError):
            await service.test_agent(_request())

        assert provider.complete_calls == 1
        sleep.assert_not_awaited()
        assert len(usage_log) == 0

    @pytest.mark.asyncio
    async def test_mock_provider_flags_result(self, storage: InMemoryStorage, usage_log: TokenUsageLog, settings: Settings) -> None:
        service = AgentTestService(
            storage=storage,
            caches=CacheRegistry(),
            usage_log=usage_log,
            provider_factory=ProviderFactory(clients=None),
            settings=settings,
        )

        result = await service.test_agent(_request())

        assert result.is_mock is True
        assert result.content
        assert result.usage.total_tokens > 0

    @pytest.mark.asyncio
    async def test_verify_credentials(self, make_service: ServiceFactory, fake_provider: ProviderBuilder) -> None:
        provider = fake_provider(
            complete_results=[CompletionResult(content="Yes, I am working.", usage=TokenUsage(), model="gpt-4o")]
        )
        service = make_service(provider)

        response = await service.verify_credentials(USER)

        assert response.status == "success"
        assert response.message == VERIFY_SUCCESS_MESSAGE
        assert response.sample == "Yes, I am working."
        assert provider.requests[0].max_tokens == 50


class TestErrorChunk:
    def test_requires_credentials_only_when_set(self) -> None:
        auth = error_chunk(CompletionError(CompletionErrorKind.MISSING_API_KEY))
        server = error_chunk(CompletionError(CompletionErrorKind.UPSTREAM_SERVER))

        assert auth.requires_credentials is True
        assert server.requires_credentials is None
        assert server.model_dump(by_alias=True, exclude_none=True) == {
            "content": "",
            "error": "OpenAI service is temporarily unavailable. Please try again later.",
            "done": True,
            "code": ErrorCode.UPSTREAM_SERVER.value,
        }
