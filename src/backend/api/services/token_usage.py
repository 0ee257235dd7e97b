"""
In-memory token usage log.

Records are appended once per finished agent test run and never mutated.
The log is bounded: past max_records the oldest records are dropped.
"""

from __future__ import annotations

import math

from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime

from core.constants import CHARS_PER_TOKEN, USAGE_LOG_MAX_RECORDS
from models.schemas.agents import TokenUsage
from models.schemas.usage import TokenUsageRecord, UsageSummary
from utils.metrics import completion_tokens_total


def estimate_tokens(text: str) -> int:
    """Approximate token count for text (chars / 4, rounded up)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenUsageLog:
    """Bounded append-only log of token usage records."""

    def __init__(
        self,
        max_records: int = USAGE_LOG_MAX_RECORDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._records: deque[TokenUsageRecord] = deque(maxlen=max_records)
        self._clock = clock

    def append(
        self,
        usage: TokenUsage,
        *,
        user_id: str | None = None,
        agent_id: int | None = None,
        model: str | None = None,
        estimated: bool = False,
    ) -> TokenUsageRecord:
        record = TokenUsageRecord(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            timestamp=self._clock(),
            user_id=user_id,
            agent_id=agent_id,
            model=model,
            estimated=estimated,
        )
        self._records.append(record)

        label = model or "unknown"
        completion_tokens_total.labels(model=label, type="prompt").inc(usage.prompt_tokens)
        completion_tokens_total.labels(model=label, type="completion").inc(usage.completion_tokens)
        return record

    def records(self, user_id: str | None = None, since: datetime | None = None) -> list[TokenUsageRecord]:
        """Records filtered by user and start time (inclusive), oldest first."""
        return [
            record
            for record in self._records
            if (user_id is None or record.user_id == user_id) and (since is None or record.timestamp >= since)
        ]

    def summarize(self, user_id: str | None = None, since: datetime | None = None) -> UsageSummary:
        summary = UsageSummary()
        for record in self.records(user_id, since):
            summary.requests += 1
            summary.prompt_tokens += record.prompt_tokens
            summary.completion_tokens += record.completion_tokens
            summary.total_tokens += record.total_tokens
        return summary

    def __len__(self) -> int:
        return len(self._records)
