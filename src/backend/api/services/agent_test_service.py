"""
Agent test orchestration: config resolution, streaming relay and the
non-streaming fallback.

The streaming relay turns an upstream token stream into StreamChunks:
content chunks in arrival order followed by exactly one terminal chunk
(done or error). Per-chunk token counts are estimated at chars/4 because the
upstream stream does not report usage; the non-streaming path uses the
provider-reported counts.
"""

from __future__ import annotations

import asyncio
import contextlib
import time

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

import asyncpg

from api.middleware.request_context import update_request_context
from api.services.storage import Storage, StoredAgent, StoredConversation
from api.services.token_usage import TokenUsageLog, estimate_tokens
from core.constants import (
    AGENT_DEFAULT_MAX_TOKENS,
    CONVERSATION_TITLE_LENGTH,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL,
    DEFAULT_TEMPERATURE,
    VERIFY_MAX_TOKENS,
    VERIFY_SUCCESS_MESSAGE,
    VERIFY_SYSTEM_PROMPT,
    VERIFY_USER_MESSAGE,
    Settings,
)
from integrations.completion_provider import CompletionProvider, CompletionRequest, CompletionResult
from integrations.errors import CompletionError, CompletionErrorKind, classify_upstream_error
from models.api_models import UserInfo
from models.schemas.agents import (
    AgentTestRequest,
    ContentChunk,
    DoneChunk,
    ErrorChunk,
    StreamChunk,
    StreamTiming,
    TokenUsage,
    VerifyResponse,
)
from utils.cache import CacheRegistry, get_or_compute
from utils.db_utils import DatabaseError
from utils.logger import logger
from utils.metrics import completion_requests_total, streams_active, upstream_call_duration_seconds

ProviderFactory = Callable[[str | None], CompletionProvider]

# Failures a storage backend may raise for a single read or write
_STORAGE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, DatabaseError, OSError, ValueError)


class StreamState(str, Enum):
    """Relay lifecycle. Terminal states are mutually exclusive."""

    INIT = "init"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


_TIMEOUT_KINDS = frozenset({CompletionErrorKind.STREAM_TIMEOUT, CompletionErrorKind.STREAM_IDLE_TIMEOUT})


@dataclass(frozen=True, slots=True)
class AgentConfig:
    """Effective configuration for one test run."""

    system_prompt: str
    model: str
    temperature: float
    max_tokens: int
    agent_id: int | None = None

    def to_request(self, message: str) -> CompletionRequest:
        return CompletionRequest(
            system_prompt=self.system_prompt,
            user_message=message,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )


@dataclass(frozen=True, slots=True)
class AgentTestResult:
    content: str
    usage: TokenUsage
    model: str
    is_mock: bool = False
    conversation_id: int | None = None


def _elapsed_ms(start: float, end: float) -> int:
    return max(int(round((end - start) * 1000)), 0)


def error_chunk(error: CompletionError) -> ErrorChunk:
    """Terminal chunk for a failed stream."""
    return ErrorChunk(
        error=error.message,
        code=error.code.value,
        requires_credentials=True if error.requires_credentials else None,
    )


class AgentTestService:
    """Runs agent configurations against the completion provider."""

    def __init__(
        self,
        storage: Storage | None,
        caches: CacheRegistry,
        usage_log: TokenUsageLog,
        provider_factory: ProviderFactory,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._storage = storage
        self._caches = caches
        self._usage_log = usage_log
        self._provider_factory = provider_factory
        self._settings = settings
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def _load_agent(self, agent_id: int) -> StoredAgent | None:
        if self._storage is None:
            return None
        storage = self._storage
        return await get_or_compute(self._caches.agent, f"agent:{agent_id}", lambda: storage.get_agent(agent_id))

    async def resolve_config(self, request: AgentTestRequest, user: UserInfo | None = None) -> AgentConfig:
        """Merge a stored agent with inline overrides and validate the result.

        Raises:
            CompletionError: AGENT_NOT_FOUND, MISSING_SYSTEM_PROMPT or MISSING_MESSAGE
        """
        agent: StoredAgent | None = None
        if request.agent_id is not None:
            agent = await self._load_agent(request.agent_id)
            if agent is None:
                raise CompletionError(CompletionErrorKind.AGENT_NOT_FOUND, agent_id=request.agent_id)

        system_prompt = request.system_prompt or (agent.system_prompt if agent else None)
        if not system_prompt or not system_prompt.strip():
            raise CompletionError(CompletionErrorKind.MISSING_SYSTEM_PROMPT)

        if not request.message or not request.message.strip():
            raise CompletionError(CompletionErrorKind.MISSING_MESSAGE)

        if request.temperature is not None:
            temperature = request.temperature
        elif agent is not None and agent.temperature is not None:
            temperature = agent.temperature
        else:
            temperature = DEFAULT_TEMPERATURE

        if request.max_tokens is not None:
            max_tokens = request.max_tokens
        elif agent is not None:
            max_tokens = agent.max_tokens or AGENT_DEFAULT_MAX_TOKENS
        else:
            max_tokens = DEFAULT_MAX_TOKENS

        return AgentConfig(
            system_prompt=system_prompt,
            model=request.model or (agent.model if agent else None) or DEFAULT_MODEL,
            temperature=temperature,
            max_tokens=max_tokens,
            agent_id=agent.id if agent else None,
        )

    async def resolve_api_key(self, user: UserInfo | None = None) -> str | None:
        """Find the upstream credential for a caller.

        Order: the user's stored key, the configured fallback key, then mock
        mode (returns None).

        Raises:
            CompletionError: MISSING_API_KEY when nothing resolves
        """
        if user is not None and self._storage is not None:
            storage = self._storage
            try:
                key = await get_or_compute(
                    self._caches.api_key,
                    f"api_key:{user.id}",
                    lambda: storage.get_api_key(user.id),
                )
            except _STORAGE_ERRORS as e:
                logger.warning(f"API key lookup failed, falling back to configured key: {e}", user_id=user.id)
                key = None
            if key:
                return key

        if self._settings.openai_api_key:
            return self._settings.openai_api_key
        if self._settings.mock_mode:
            return None
        raise CompletionError(CompletionErrorKind.MISSING_API_KEY)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _open_conversation(
        self,
        storage: Storage,
        request: AgentTestRequest,
        config: AgentConfig,
        user: UserInfo,
    ) -> StoredConversation | None:
        if request.conversation_id is not None:
            conversation_id = request.conversation_id
            conversation = await get_or_compute(
                self._caches.conversation,
                f"conversation:{conversation_id}",
                lambda: storage.get_conversation(conversation_id),
            )
            if conversation is not None and conversation.user_id == user.id:
                return conversation
            logger.warning("Conversation not found for user, starting a new one", conversation_id=conversation_id)

        conversation = await storage.create_conversation(
            user.id,
            config.agent_id,
            title=request.message.strip()[:CONVERSATION_TITLE_LENGTH],
        )
        self._caches.conversation.set(f"conversation:{conversation.id}", conversation)
        return conversation

    async def _persist_user_message(
        self,
        request: AgentTestRequest,
        config: AgentConfig,
        user: UserInfo | None,
    ) -> int | None:
        """Store the incoming message before generation. Returns the conversation id."""
        storage = self._storage
        if storage is None or user is None:
            return None
        try:
            conversation = await self._open_conversation(storage, request, config, user)
            if conversation is None:
                return None
            await storage.create_message(
                conversation.id,
                "user",
                request.message,
                token_count=estimate_tokens(request.message),
            )
        except _STORAGE_ERRORS as e:
            logger.error(f"Failed to persist user message: {e}", exc_info=True)
            return None

        update_request_context(conversation_id=conversation.id)
        return conversation.id

    async def _persist_assistant_message(self, conversation_id: int | None, content: str, token_count: int) -> None:
        if self._storage is None or conversation_id is None or not content:
            return
        try:
            await self._storage.create_message(conversation_id, "assistant", content, token_count=token_count)
        except _STORAGE_ERRORS as e:
            logger.error(f"Failed to persist assistant message: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Streaming relay
    # ------------------------------------------------------------------

    async def open_stream(
        self,
        request: AgentTestRequest,
        user: UserInfo | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Resolve configuration up front, then return the relay iterator.

        Configuration errors raise here, before any response is committed.

        Raises:
            CompletionError: AGENT_NOT_FOUND, MISSING_SYSTEM_PROMPT, MISSING_MESSAGE or MISSING_API_KEY
        """
        started = self._clock()
        try:
            config = await self.resolve_config(request, user)
            api_key = await self.resolve_api_key(user)
        except CompletionError as e:
            completion_requests_total.labels(mode="stream", outcome=e.kind.value).inc()
            raise
        return self._relay(request, user, config, api_key, started)

    async def stream_agent_test(
        self,
        request: AgentTestRequest,
        user: UserInfo | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Relay one streamed test run as StreamChunks.

        Yields content chunks in arrival order, then exactly one DoneChunk or
        ErrorChunk. Configuration errors produce a lone ErrorChunk. If the
        consumer goes away mid-stream, the upstream stream is closed, partial
        usage is recorded and no terminal chunk is sent.
        """
        try:
            relay = await self.open_stream(request, user)
        except CompletionError as e:
            logger.info(f"Agent test rejected before streaming: {e.message}", kind=e.kind.value)
            yield error_chunk(e)
            return
        except Exception as e:
            error = classify_upstream_error(e)
            logger.error(f"Agent test failed before streaming: {e}", exc_info=True, kind=error.kind.value)
            yield error_chunk(error)
            return

        async with contextlib.aclosing(relay) as chunks:  # type: ignore[type-var]
            async for chunk in chunks:
                yield chunk

    async def _relay(
        self,
        request: AgentTestRequest,
        user: UserInfo | None,
        config: AgentConfig,
        api_key: str | None,
        started: float,
    ) -> AsyncIterator[StreamChunk]:
        user_id = user.id if user else None
        update_request_context(agent_id=config.agent_id)
        provider = self._provider_factory(api_key)
        conversation_id = await self._persist_user_message(request, config, user)

        completion_request = config.to_request(request.message)
        accumulated: list[str] = []
        completion_tokens = 0
        idle_timeout = self._settings.stream_idle_timeout
        deadline = started + self._settings.stream_max_duration
        usage_recorded = False

        def record_partial_usage() -> None:
            if accumulated and not usage_recorded:
                self._usage_log.append(
                    self._estimated_usage(completion_request, "".join(accumulated)),
                    user_id=user_id,
                    agent_id=config.agent_id,
                    model=config.model,
                    estimated=True,
                )

        upstream = aiter(provider.stream(completion_request))
        streaming_started = self._clock()
        state = StreamState.STREAMING
        streams_active.inc()

        try:
            while True:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise CompletionError(CompletionErrorKind.STREAM_TIMEOUT)
                try:
                    # Idle timer is re-armed for every chunk
                    text = await asyncio.wait_for(anext(upstream), timeout=min(idle_timeout, remaining))
                except StopAsyncIteration:
                    break
                except TimeoutError:
                    kind = (
                        CompletionErrorKind.STREAM_IDLE_TIMEOUT
                        if idle_timeout <= remaining
                        else CompletionErrorKind.STREAM_TIMEOUT
                    )
                    raise CompletionError(kind) from None

                if not text:
                    continue
                accumulated.append(text)
                completion_tokens += estimate_tokens(text)
                yield ContentChunk(content=text)

            content = "".join(accumulated)
            usage = self._estimated_usage(completion_request, content)
            self._usage_log.append(
                usage,
                user_id=user_id,
                agent_id=config.agent_id,
                model=config.model,
                estimated=True,
            )
            usage_recorded = True
            await self._persist_assistant_message(conversation_id, content, usage.completion_tokens)

            finished = self._clock()
            state = StreamState.COMPLETED
            logger.log_completion(
                user_message=request.message,
                response=content,
                model=config.model,
                streamed=True,
                duration_ms=_elapsed_ms(started, finished),
                total_tokens=usage.total_tokens,
                estimated=True,
            )
            yield DoneChunk(
                timing=StreamTiming(
                    total=_elapsed_ms(started, finished),
                    streaming=_elapsed_ms(streaming_started, finished),
                ),
                conversation_id=conversation_id,
            )

        except (asyncio.CancelledError, GeneratorExit):
            if state is StreamState.STREAMING:
                state = StreamState.CANCELLED
                logger.info(
                    "Agent test stream cancelled by client",
                    chunks=len(accumulated),
                    completion_tokens=completion_tokens,
                )
                record_partial_usage()
            raise

        except Exception as exc:
            error = classify_upstream_error(exc)
            state = StreamState.TIMED_OUT if error.kind in _TIMEOUT_KINDS else StreamState.ERRORED
            if isinstance(exc, CompletionError):
                logger.warning(
                    f"Agent test stream failed: {error.message}",
                    kind=error.kind.value,
                    chunks=len(accumulated),
                )
            else:
                logger.error(f"Agent test stream failed: {exc}", exc_info=True, chunks=len(accumulated))
            record_partial_usage()
            yield error_chunk(error)

        finally:
            streams_active.dec()
            upstream_call_duration_seconds.labels(mode="stream").observe(self._clock() - streaming_started)
            completion_requests_total.labels(mode="stream", outcome=state.value).inc()
            aclose = getattr(upstream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _estimated_usage(self, request: CompletionRequest, content: str) -> TokenUsage:
        prompt_tokens = estimate_tokens(request.system_prompt + request.user_message)
        completion_tokens = estimate_tokens(content)
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def _complete_with_retry(self, provider: CompletionProvider, request: CompletionRequest) -> CompletionResult:
        """Call the provider, retrying retryable failures with linear backoff."""
        max_retries = max(self._settings.completion_max_retries, 0)
        for attempt in range(max_retries + 1):
            started = self._clock()
            try:
                return await provider.complete(request)
            except CompletionError as e:  # noqa: PERF203
                if not e.retryable or attempt >= max_retries:
                    raise
                delay = self._settings.completion_retry_delay * (attempt + 1)
                logger.warning(
                    f"Completion failed (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e.message}",
                    kind=e.kind.value,
                )
                await self._sleep(delay)
            finally:
                upstream_call_duration_seconds.labels(mode="complete").observe(self._clock() - started)

        raise RuntimeError("Retry loop exited unexpectedly")

    async def test_agent(self, request: AgentTestRequest, user: UserInfo | None = None) -> AgentTestResult:
        """Run one non-streaming test and return the full completion.

        Raises:
            CompletionError: on invalid configuration or upstream failure
        """
        started = self._clock()
        try:
            config = await self.resolve_config(request, user)
            api_key = await self.resolve_api_key(user)
            update_request_context(agent_id=config.agent_id)

            provider = self._provider_factory(api_key)
            result = await self._complete_with_retry(provider, config.to_request(request.message))
        except CompletionError as e:
            completion_requests_total.labels(mode="complete", outcome=e.kind.value).inc()
            raise

        self._usage_log.append(
            result.usage,
            user_id=user.id if user else None,
            agent_id=config.agent_id,
            model=result.model,
        )
        completion_requests_total.labels(mode="complete", outcome=StreamState.COMPLETED.value).inc()
        logger.log_completion(
            user_message=request.message,
            response=result.content,
            model=result.model,
            streamed=False,
            duration_ms=_elapsed_ms(started, self._clock()),
            total_tokens=result.usage.total_tokens,
        )
        return AgentTestResult(
            content=result.content,
            usage=result.usage,
            model=result.model,
            is_mock=result.is_mock or provider.is_mock,
        )

    async def verify_credentials(self, user: UserInfo | None = None) -> VerifyResponse:
        """Send a minimal prompt to confirm the caller's credential works."""
        result = await self.test_agent(
            AgentTestRequest(
                message=VERIFY_USER_MESSAGE,
                system_prompt=VERIFY_SYSTEM_PROMPT,
                model=DEFAULT_MODEL,
                temperature=DEFAULT_TEMPERATURE,
                max_tokens=VERIFY_MAX_TOKENS,
            ),
            user,
        )
        return VerifyResponse(message=VERIFY_SUCCESS_MESSAGE, sample=result.content, is_mock=result.is_mock)


__all__ = [
    "AgentConfig",
    "AgentTestResult",
    "AgentTestService",
    "StreamState",
    "error_chunk",
]
