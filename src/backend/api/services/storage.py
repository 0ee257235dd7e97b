"""
Persistence collaborator for the agent test paths.

Only the handful of reads and writes the relay needs: stored agents, per-user
API keys, conversations and their messages. PostgresStorage runs against the
existing schema; InMemoryStorage backs development without a database.
"""

from __future__ import annotations

import itertools

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import asyncpg

from utils.db_utils import acquire_connection, with_retry


@dataclass(frozen=True, slots=True)
class StoredAgent:
    """Agent configuration as persisted."""

    id: int
    user_id: str
    name: str
    model: str
    temperature: float | None
    max_tokens: int | None
    system_prompt: str | None


@dataclass(frozen=True, slots=True)
class StoredConversation:
    id: int
    user_id: str
    agent_id: int | None
    title: str | None


@dataclass(frozen=True, slots=True)
class StoredMessage:
    id: int
    conversation_id: int
    role: str
    content: str
    token_count: int | None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class Storage(Protocol):
    """Async persistence operations consumed by AgentTestService."""

    async def get_agent(self, agent_id: int) -> StoredAgent | None: ...

    async def get_api_key(self, user_id: str) -> str | None: ...

    async def get_conversation(self, conversation_id: int) -> StoredConversation | None: ...

    async def create_conversation(self, user_id: str, agent_id: int | None, title: str | None) -> StoredConversation: ...

    async def create_message(
        self,
        conversation_id: int,
        role: str,
        content: str,
        token_count: int | None = None,
    ) -> StoredMessage: ...


def _parse_temperature(value: Any) -> float | None:
    """Agents store temperature as text."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class PostgresStorage:
    """Storage backed by PostgreSQL via asyncpg."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @with_retry(max_attempts=3)
    async def get_agent(self, agent_id: int) -> StoredAgent | None:
        async with acquire_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                SELECT id, user_id, name, model, temperature, max_tokens, system_prompt
                FROM agents
                WHERE id = $1
                """,
                agent_id,
            )
        if not row:
            return None
        return StoredAgent(
            id=row["id"],
            user_id=str(row["user_id"]),
            name=row["name"],
            model=row["model"],
            temperature=_parse_temperature(row["temperature"]),
            max_tokens=row["max_tokens"],
            system_prompt=row["system_prompt"],
        )

    @with_retry(max_attempts=3)
    async def get_api_key(self, user_id: str) -> str | None:
        async with acquire_connection(self.pool) as conn:
            value: str | None = await conn.fetchval(
                "SELECT api_key FROM api_keys WHERE user_id = $1",
                int(user_id),
            )
        return value or None

    @with_retry(max_attempts=3)
    async def get_conversation(self, conversation_id: int) -> StoredConversation | None:
        async with acquire_connection(self.pool) as conn:
            row = await conn.fetchrow(
                "SELECT id, user_id, agent_id, title FROM conversations WHERE id = $1",
                conversation_id,
            )
        if not row:
            return None
        return StoredConversation(
            id=row["id"],
            user_id=str(row["user_id"]),
            agent_id=row["agent_id"],
            title=row["title"],
        )

    async def create_conversation(self, user_id: str, agent_id: int | None, title: str | None) -> StoredConversation:
        async with acquire_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO conversations (user_id, agent_id, title)
                VALUES ($1, $2, $3)
                RETURNING id, user_id, agent_id, title
                """,
                int(user_id),
                agent_id,
                title,
            )
        return StoredConversation(
            id=row["id"],
            user_id=str(row["user_id"]),
            agent_id=row["agent_id"],
            title=row["title"],
        )

    async def create_message(
        self,
        conversation_id: int,
        role: str,
        content: str,
        token_count: int | None = None,
    ) -> StoredMessage:
        async with acquire_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO messages (conversation_id, role, content, token_count)
                VALUES ($1, $2, $3, $4)
                RETURNING id, created_at
                """,
                conversation_id,
                role,
                content,
                token_count,
            )
        return StoredMessage(
            id=row["id"],
            conversation_id=conversation_id,
            role=role,
            content=content,
            token_count=token_count,
            created_at=row["created_at"],
        )


class InMemoryStorage:
    """Process-local storage for development and tests."""

    def __init__(self) -> None:
        self.agents: dict[int, StoredAgent] = {}
        self.api_keys: dict[str, str] = {}
        self.conversations: dict[int, StoredConversation] = {}
        self.messages: list[StoredMessage] = []
        self._conversation_ids = itertools.count(1)
        self._message_ids = itertools.count(1)

    def add_agent(self, agent: StoredAgent) -> None:
        self.agents[agent.id] = agent

    def save_api_key(self, user_id: str, api_key: str) -> None:
        self.api_keys[user_id] = api_key

    async def get_agent(self, agent_id: int) -> StoredAgent | None:
        return self.agents.get(agent_id)

    async def get_api_key(self, user_id: str) -> str | None:
        return self.api_keys.get(user_id)

    async def get_conversation(self, conversation_id: int) -> StoredConversation | None:
        return self.conversations.get(conversation_id)

    async def create_conversation(self, user_id: str, agent_id: int | None, title: str | None) -> StoredConversation:
        conversation = StoredConversation(
            id=next(self._conversation_ids),
            user_id=user_id,
            agent_id=agent_id,
            title=title,
        )
        self.conversations[conversation.id] = conversation
        return conversation

    async def create_message(
        self,
        conversation_id: int,
        role: str,
        content: str,
        token_count: int | None = None,
    ) -> StoredMessage:
        message = StoredMessage(
            id=next(self._message_ids),
            conversation_id=conversation_id,
            role=role,
            content=content,
            token_count=token_count,
        )
        self.messages.append(message)
        return message


__all__ = [
    "InMemoryStorage",
    "PostgresStorage",
    "Storage",
    "StoredAgent",
    "StoredConversation",
    "StoredMessage",
]
