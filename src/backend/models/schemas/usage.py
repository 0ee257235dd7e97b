"""
Token usage API schemas.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TokenUsageRecord(BaseModel):
    """One completed agent test run's token usage. Never mutated once logged."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    prompt_tokens: int = Field(..., ge=0)
    completion_tokens: int = Field(..., ge=0)
    total_tokens: int = Field(..., ge=0)
    timestamp: datetime
    user_id: str | None = None
    agent_id: int | None = None
    model: str | None = None
    estimated: bool = Field(default=False, description="Counts are a chars/4 heuristic (streamed runs)")


class UsageSummary(BaseModel):
    """Aggregated usage over a set of records."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    requests: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class UsageResponse(BaseModel):
    """Caller's usage summary with the underlying records."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    summary: UsageSummary
    records: list[TokenUsageRecord]
    since: datetime | None = None
