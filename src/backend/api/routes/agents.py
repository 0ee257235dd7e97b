"""
Agent test endpoints.

Runs an agent configuration (stored or inline) against the completion
provider, either as one JSON response or as a newline-delimited JSON stream.
"""

from __future__ import annotations

import contextlib

from collections.abc import AsyncIterator

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from api.dependencies import AgentTests
from api.middleware.auth import OptionalUser
from models.schemas.agents import AgentTestRequest, AgentTestResponse, VerifyResponse
from utils.stream_codec import encode_chunk

router = APIRouter()

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_ERROR_EXAMPLE = {
    "application/json": {
        "example": {
            "error": "Agent system prompt is required",
            "code": "CFG_4001",
            "request_id": "req_a1b2c3d4e5f6a7b8",
        }
    }
}


@router.post(
    "/agents/test",
    response_model=AgentTestResponse,
    response_model_by_alias=True,
    summary="Test an agent",
    description="Send one message to an agent configuration and return the full completion.",
    responses={
        200: {
            "description": "Completion returned",
            "content": {
                "application/json": {
                    "example": {
                        "content": "Refunds are issued within 14 days...",
                        "usage": {"promptTokens": 42, "completionTokens": 31, "totalTokens": 73},
                        "model": "gpt-4o",
                        "isMock": False,
                    }
                }
            },
        },
        400: {"description": "Invalid agent configuration or missing API key", "content": _ERROR_EXAMPLE},
        404: {"description": "Agent not found"},
        429: {"description": "Rate limited"},
        502: {"description": "Upstream failure after retries"},
    },
)
async def test_agent(body: AgentTestRequest, service: AgentTests, user: OptionalUser) -> AgentTestResponse:
    """Run a non-streaming agent test."""
    result = await service.test_agent(body, user)
    return AgentTestResponse(
        content=result.content,
        usage=result.usage,
        model=result.model,
        is_mock=result.is_mock,
        conversation_id=result.conversation_id,
    )


@router.post(
    "/agents/test/stream",
    summary="Stream an agent test",
    description=(
        "Stream the completion as newline-delimited JSON chunks. Every stream ends "
        "with exactly one chunk carrying done=true, either with timing or with an error."
    ),
    responses={
        200: {
            "description": "Chunk stream",
            "content": {
                "application/json": {
                    "example": '{"content":"Hello","done":false}\n{"content":"","done":true,"timing":{"total":812,"streaming":640}}\n'
                }
            },
        },
        400: {"description": "Invalid agent configuration or missing API key", "content": _ERROR_EXAMPLE},
        404: {"description": "Agent not found"},
    },
)
async def stream_agent_test(body: AgentTestRequest, service: AgentTests, user: OptionalUser) -> StreamingResponse:
    """Stream an agent test. Configuration errors are returned as JSON before streaming starts."""
    chunks = await service.open_stream(body, user)

    async def body_iterator() -> AsyncIterator[bytes]:
        async with contextlib.aclosing(chunks):  # type: ignore[type-var]
            async for chunk in chunks:
                yield encode_chunk(chunk)

    return StreamingResponse(body_iterator(), media_type="application/json", headers=STREAM_HEADERS)


@router.get(
    "/openai/verify",
    response_model=VerifyResponse,
    response_model_by_alias=True,
    summary="Verify OpenAI credentials",
    description="Send a minimal prompt with the caller's credential to confirm it works.",
    responses={
        200: {
            "description": "Credential works",
            "content": {
                "application/json": {
                    "example": {
                        "status": "success",
                        "message": "Successfully connected to OpenAI API",
                        "sample": "OK",
                        "isMock": False,
                    }
                }
            },
        },
        401: {"description": "Credential rejected upstream"},
    },
)
async def verify_openai(service: AgentTests, user: OptionalUser) -> VerifyResponse:
    """Verify the caller's OpenAI credential."""
    return await service.verify_credentials(user)
