"""
Agent test API schemas.

Request/response models for the agent test endpoints and the chunk types
emitted by the streaming relay. Wire names are camelCase; Python attributes
stay snake_case.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

_WIRE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Usage
# =============================================================================


class TokenUsage(BaseModel):
    """Canonical token usage for one completion."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)


# =============================================================================
# Request Models
# =============================================================================


class AgentTestRequest(BaseModel):
    """Request body for testing an agent configuration.

    Either ``agentId`` references a stored agent, or the configuration is
    supplied inline. Inline fields override the stored agent's values.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "agentId": 12,
                "message": "Summarize our refund policy in two sentences.",
                "temperature": 0.2,
            }
        },
    )

    agent_id: int | None = Field(default=None, description="Stored agent to test")
    message: str = Field(default="", description="User message sent to the agent")
    system_prompt: str | None = Field(default=None, description="Inline system prompt")
    model: str | None = Field(default=None, description="Model identifier", json_schema_extra={"example": "gpt-4o"})
    temperature: float | None = Field(default=None, ge=0.0, le=2.0, description="Sampling temperature")
    max_tokens: int | None = Field(default=None, ge=1, description="Completion token budget")
    conversation_id: int | None = Field(default=None, description="Existing conversation to append to")
    stream: bool = Field(default=False, description="Ignored by the non-streaming endpoint")


# =============================================================================
# Response Models
# =============================================================================


class AgentTestResponse(BaseModel):
    """Non-streaming agent test result."""

    model_config = _WIRE_CONFIG

    content: str
    usage: TokenUsage
    model: str
    is_mock: bool = False
    conversation_id: int | None = None


class VerifyResponse(BaseModel):
    """Credential verification result."""

    model_config = _WIRE_CONFIG

    status: Literal["success"] = "success"
    message: str
    sample: str
    is_mock: bool = False


# =============================================================================
# Stream chunks
# =============================================================================


class StreamTiming(BaseModel):
    """Elapsed durations in milliseconds."""

    total: int = Field(..., ge=0, description="Request acceptance to completion")
    streaming: int = Field(..., ge=0, description="First upstream byte to completion")


class ContentChunk(BaseModel):
    """Incremental completion text."""

    content: str
    done: Literal[False] = False


class DoneChunk(BaseModel):
    """Successful end of stream."""

    model_config = _WIRE_CONFIG

    content: Literal[""] = ""
    done: Literal[True] = True
    timing: StreamTiming
    conversation_id: int | None = None


class ErrorChunk(BaseModel):
    """Failed end of stream."""

    model_config = _WIRE_CONFIG

    content: Literal[""] = ""
    error: str
    done: Literal[True] = True
    code: str | None = None
    requires_credentials: bool | None = None


StreamChunk = ContentChunk | DoneChunk | ErrorChunk


__all__ = [
    "AgentTestRequest",
    "AgentTestResponse",
    "ContentChunk",
    "DoneChunk",
    "ErrorChunk",
    "StreamChunk",
    "StreamTiming",
    "TokenUsage",
    "VerifyResponse",
]
