"""Tests for the completion error taxonomy and upstream classification."""

from __future__ import annotations

import httpx
import openai
import pytest

from integrations.errors import CompletionError, CompletionErrorKind, classify_upstream_error
from models.error_models import ErrorCode

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _status_error(cls: type[openai.APIStatusError], status: int, message: str = "upstream message") -> Exception:
    return cls(message, response=httpx.Response(status, request=_REQUEST), body=None)


class TestCompletionErrorKind:
    @pytest.mark.parametrize(
        ("kind", "status"),
        [
            (CompletionErrorKind.MISSING_SYSTEM_PROMPT, 400),
            (CompletionErrorKind.MISSING_MESSAGE, 400),
            (CompletionErrorKind.AGENT_NOT_FOUND, 404),
            (CompletionErrorKind.MISSING_API_KEY, 400),
            (CompletionErrorKind.UPSTREAM_AUTH, 401),
            (CompletionErrorKind.UPSTREAM_RATE_LIMITED, 429),
        ],
    )
    def test_status_codes(self, kind: CompletionErrorKind, status: int) -> None:
        assert kind.status_code == status

    def test_only_transient_upstream_failures_retry(self) -> None:
        retryable = {kind for kind in CompletionErrorKind if kind.retryable}

        assert retryable == {CompletionErrorKind.UPSTREAM_RATE_LIMITED, CompletionErrorKind.UPSTREAM_SERVER}

    def test_credential_kinds(self) -> None:
        flagged = {kind for kind in CompletionErrorKind if kind.requires_credentials}

        assert flagged == {CompletionErrorKind.MISSING_API_KEY, CompletionErrorKind.UPSTREAM_AUTH}

    def test_client_errors(self) -> None:
        assert CompletionErrorKind.MISSING_MESSAGE.is_client_error is True
        assert CompletionErrorKind.UPSTREAM_SERVER.is_client_error is False


class TestCompletionError:
    def test_formats_agent_id(self) -> None:
        error = CompletionError(CompletionErrorKind.AGENT_NOT_FOUND, agent_id=12)

        assert error.message == "Agent 12 not found"
        assert str(error) == "Agent 12 not found"
        assert error.code is ErrorCode.AGENT_NOT_FOUND

    def test_generic_uses_detail(self) -> None:
        error = CompletionError(CompletionErrorKind.UPSTREAM_GENERIC, detail="model not found")

        assert error.message == "OpenAI API error: model not found"

    def test_generic_without_detail(self) -> None:
        error = CompletionError(CompletionErrorKind.UPSTREAM_GENERIC)

        assert error.message == "OpenAI API error: unknown error"

    def test_detail_does_not_leak_into_fixed_messages(self) -> None:
        error = CompletionError(CompletionErrorKind.UPSTREAM_AUTH, detail="Incorrect API key provided: sk-abc")

        assert "sk-abc" not in error.message
        assert error.detail == "Incorrect API key provided: sk-abc"


class TestClassifyUpstreamError:
    @pytest.mark.parametrize(
        ("exc", "kind"),
        [
            (_status_error(openai.AuthenticationError, 401), CompletionErrorKind.UPSTREAM_AUTH),
            (_status_error(openai.PermissionDeniedError, 403), CompletionErrorKind.UPSTREAM_AUTH),
            (_status_error(openai.RateLimitError, 429), CompletionErrorKind.UPSTREAM_RATE_LIMITED),
            (_status_error(openai.InternalServerError, 500), CompletionErrorKind.UPSTREAM_SERVER),
            (_status_error(openai.APIStatusError, 503), CompletionErrorKind.UPSTREAM_SERVER),
            (_status_error(openai.BadRequestError, 400), CompletionErrorKind.UPSTREAM_GENERIC),
            (_status_error(openai.NotFoundError, 404), CompletionErrorKind.UPSTREAM_GENERIC),
            (openai.APIConnectionError(request=_REQUEST), CompletionErrorKind.UPSTREAM_SERVER),
            (openai.APITimeoutError(request=_REQUEST), CompletionErrorKind.UPSTREAM_SERVER),
            (RuntimeError("socket closed"), CompletionErrorKind.UPSTREAM_GENERIC),
        ],
    )
    def test_mapping(self, exc: Exception, kind: CompletionErrorKind) -> None:
        assert classify_upstream_error(exc).kind is kind

    def test_passthrough(self) -> None:
        error = CompletionError(CompletionErrorKind.STREAM_TIMEOUT)

        assert classify_upstream_error(error) is error

    def test_bad_request_message_surfaces(self) -> None:
        exc = _status_error(openai.BadRequestError, 400, message="The model `gpt-9` does not exist")

        error = classify_upstream_error(exc)

        assert error.message == "OpenAI API error: The model `gpt-9` does not exist"

    def test_unnamed_exception_uses_type(self) -> None:
        error = classify_upstream_error(ValueError())

        assert error.message == "OpenAI API error: ValueError"
