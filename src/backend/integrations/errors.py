"""
Completion error taxonomy.

Every failure the agent test paths can surface is a CompletionError with a
kind. The kind fixes the user-facing message, HTTP status, error code and
whether the non-streaming path may retry it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import openai

from core.constants import (
    ERROR_AGENT_NOT_FOUND,
    ERROR_MISSING_API_KEY,
    ERROR_MISSING_MESSAGE,
    ERROR_MISSING_SYSTEM_PROMPT,
    ERROR_STREAM_IDLE_TIMEOUT,
    ERROR_STREAM_TIMEOUT,
    ERROR_UPSTREAM_AUTH,
    ERROR_UPSTREAM_GENERIC,
    ERROR_UPSTREAM_RATE_LIMITED,
    ERROR_UPSTREAM_SERVER,
)
from models.error_models import ErrorCode, get_status_code


@dataclass(frozen=True, slots=True)
class _KindSpec:
    message: str
    code: ErrorCode
    retryable: bool = False
    requires_credentials: bool = False


class CompletionErrorKind(str, Enum):
    """Failure categories for agent test runs."""

    MISSING_SYSTEM_PROMPT = "missing_system_prompt"
    MISSING_MESSAGE = "missing_message"
    AGENT_NOT_FOUND = "agent_not_found"
    MISSING_API_KEY = "missing_api_key"
    UPSTREAM_AUTH = "upstream_auth"
    UPSTREAM_RATE_LIMITED = "upstream_rate_limited"
    UPSTREAM_SERVER = "upstream_server"
    STREAM_TIMEOUT = "stream_timeout"
    STREAM_IDLE_TIMEOUT = "stream_idle_timeout"
    UPSTREAM_GENERIC = "upstream_generic"

    @property
    def spec(self) -> _KindSpec:
        return _KIND_SPECS[self]

    @property
    def code(self) -> ErrorCode:
        return self.spec.code

    @property
    def status_code(self) -> int:
        return get_status_code(self.spec.code)

    @property
    def retryable(self) -> bool:
        return self.spec.retryable

    @property
    def requires_credentials(self) -> bool:
        return self.spec.requires_credentials

    @property
    def is_client_error(self) -> bool:
        return self in _CLIENT_ERRORS


_KIND_SPECS: dict[CompletionErrorKind, _KindSpec] = {
    CompletionErrorKind.MISSING_SYSTEM_PROMPT: _KindSpec(ERROR_MISSING_SYSTEM_PROMPT, ErrorCode.MISSING_SYSTEM_PROMPT),
    CompletionErrorKind.MISSING_MESSAGE: _KindSpec(ERROR_MISSING_MESSAGE, ErrorCode.MISSING_MESSAGE),
    CompletionErrorKind.AGENT_NOT_FOUND: _KindSpec(ERROR_AGENT_NOT_FOUND, ErrorCode.AGENT_NOT_FOUND),
    CompletionErrorKind.MISSING_API_KEY: _KindSpec(
        ERROR_MISSING_API_KEY, ErrorCode.MISSING_API_KEY, requires_credentials=True
    ),
    CompletionErrorKind.UPSTREAM_AUTH: _KindSpec(ERROR_UPSTREAM_AUTH, ErrorCode.UPSTREAM_AUTH, requires_credentials=True),
    CompletionErrorKind.UPSTREAM_RATE_LIMITED: _KindSpec(
        ERROR_UPSTREAM_RATE_LIMITED, ErrorCode.EXTERNAL_RATE_LIMITED, retryable=True
    ),
    CompletionErrorKind.UPSTREAM_SERVER: _KindSpec(ERROR_UPSTREAM_SERVER, ErrorCode.UPSTREAM_SERVER, retryable=True),
    CompletionErrorKind.STREAM_TIMEOUT: _KindSpec(ERROR_STREAM_TIMEOUT, ErrorCode.STREAM_TIMEOUT),
    CompletionErrorKind.STREAM_IDLE_TIMEOUT: _KindSpec(ERROR_STREAM_IDLE_TIMEOUT, ErrorCode.STREAM_IDLE_TIMEOUT),
    CompletionErrorKind.UPSTREAM_GENERIC: _KindSpec(ERROR_UPSTREAM_GENERIC, ErrorCode.OPENAI_ERROR),
}

_CLIENT_ERRORS = frozenset(
    {
        CompletionErrorKind.MISSING_SYSTEM_PROMPT,
        CompletionErrorKind.MISSING_MESSAGE,
        CompletionErrorKind.AGENT_NOT_FOUND,
        CompletionErrorKind.MISSING_API_KEY,
    }
)


class CompletionError(Exception):
    """A categorized agent test failure with a stable user-facing message."""

    def __init__(self, kind: CompletionErrorKind, detail: str | None = None, **format_args: object):
        self.kind = kind
        self.detail = detail
        template = kind.spec.message
        if kind is CompletionErrorKind.UPSTREAM_GENERIC:
            format_args.setdefault("detail", detail or "unknown error")
        self.message = template.format(**format_args) if format_args else template
        super().__init__(self.message)

    @property
    def code(self) -> ErrorCode:
        return self.kind.code

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    @property
    def requires_credentials(self) -> bool:
        return self.kind.requires_credentials

    def __repr__(self) -> str:
        return f"CompletionError(kind={self.kind.value!r}, message={self.message!r})"


def classify_upstream_error(exc: BaseException) -> CompletionError:
    """Map an exception raised by the upstream client onto the taxonomy."""
    if isinstance(exc, CompletionError):
        return exc

    if isinstance(exc, openai.AuthenticationError | openai.PermissionDeniedError):
        return CompletionError(CompletionErrorKind.UPSTREAM_AUTH, detail=str(exc))
    if isinstance(exc, openai.RateLimitError):
        return CompletionError(CompletionErrorKind.UPSTREAM_RATE_LIMITED, detail=str(exc))
    if isinstance(exc, openai.InternalServerError):
        return CompletionError(CompletionErrorKind.UPSTREAM_SERVER, detail=str(exc))
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500:
            return CompletionError(CompletionErrorKind.UPSTREAM_SERVER, detail=str(exc))
        return CompletionError(CompletionErrorKind.UPSTREAM_GENERIC, detail=exc.message)
    if isinstance(exc, openai.APIConnectionError):
        # Covers APITimeoutError: the request never produced a response
        return CompletionError(CompletionErrorKind.UPSTREAM_SERVER, detail=str(exc))
    if isinstance(exc, openai.APIError):
        return CompletionError(CompletionErrorKind.UPSTREAM_GENERIC, detail=exc.message)

    return CompletionError(CompletionErrorKind.UPSTREAM_GENERIC, detail=str(exc) or type(exc).__name__)


__all__ = ["CompletionError", "CompletionErrorKind", "classify_upstream_error"]
