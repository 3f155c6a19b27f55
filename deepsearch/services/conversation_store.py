"""Conversation persistence.

``upsert`` replaces every message of a chat atomically with the given ordered
list; a chat's owner is fixed when it is first saved.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import asyncpg

from deepsearch.errors import ChatOwnershipError, PersistenceError
from deepsearch.models.messages import ConversationTurn
from deepsearch.services import logger as log_service


@dataclass
class Chat:
    id: str
    user_id: str
    title: str
    messages: list[ConversationTurn] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ConversationStore(Protocol):
    async def upsert(
        self,
        user_id: str,
        chat_id: str,
        title: str,
        messages: list[ConversationTurn],
    ) -> None: ...
    async def get(self, chat_id: str) -> Chat | None: ...
    async def list_chats(self, user_id: str) -> list[dict[str, Any]]: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryConversationStore:
    """Process-local store used when no database is configured."""

    def __init__(self):
        self._chats: dict[str, Chat] = {}
        self._lock = asyncio.Lock()

    async def upsert(
        self,
        user_id: str,
        chat_id: str,
        title: str,
        messages: list[ConversationTurn],
    ) -> None:
        async with self._lock:
            existing = self._chats.get(chat_id)
            if existing is not None and existing.user_id != user_id:
                raise ChatOwnershipError("Chat does not belong to the logged in user")
            now = _utc_now()
            self._chats[chat_id] = Chat(
                id=chat_id,
                user_id=user_id,
                title=title,
                messages=[m.model_copy(deep=True) for m in messages],
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )

    async def get(self, chat_id: str) -> Chat | None:
        chat = self._chats.get(chat_id)
        if chat is None:
            return None
        return Chat(
            id=chat.id,
            user_id=chat.user_id,
            title=chat.title,
            messages=[m.model_copy(deep=True) for m in chat.messages],
            created_at=chat.created_at,
            updated_at=chat.updated_at,
        )

    async def list_chats(self, user_id: str) -> list[dict[str, Any]]:
        chats = [c for c in self._chats.values() if c.user_id == user_id]
        chats.sort(key=lambda c: c.updated_at or _utc_now(), reverse=True)
        return [
            {"id": c.id, "title": c.title, "created_at": c.created_at, "updated_at": c.updated_at}
            for c in chats
        ]


# Closed pools and released connections raise InterfaceError; pool acquire
# raises TimeoutError when no connection frees up.
DB_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.exceptions.InterfaceError,
    asyncio.TimeoutError,
    OSError,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    parts JSONB NOT NULL,
    "order" INTEGER NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS messages_chat_order_idx ON messages (chat_id, "order");
CREATE INDEX IF NOT EXISTS chats_user_updated_idx ON chats (user_id, updated_at DESC);
"""


def _coerce_json_list(value: Any) -> list[Any]:
    """Normalize JSON-string columns into lists."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


class PostgresConversationStore:
    """PostgreSQL store using an asyncpg connection pool."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @classmethod
    async def create(cls, database_url: str, *, init_schema: bool = True) -> "PostgresConversationStore":
        pool = await asyncpg.create_pool(database_url, min_size=1, max_size=10)
        store = cls(pool)
        if init_schema:
            await store.init_schema()
        return store

    async def init_schema(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def close(self) -> None:
        await self._pool.close()

    async def upsert(
        self,
        user_id: str,
        chat_id: str,
        title: str,
        messages: list[ConversationTurn],
    ) -> None:
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    owner = await conn.fetchval(
                        "SELECT user_id FROM chats WHERE id = $1 FOR UPDATE",
                        chat_id,
                    )
                    if owner is not None and owner != user_id:
                        raise ChatOwnershipError("Chat does not belong to the logged in user")
                    if owner is not None:
                        await conn.execute("DELETE FROM messages WHERE chat_id = $1", chat_id)
                    await conn.execute(
                        """
                        INSERT INTO chats (id, user_id, title, updated_at)
                        VALUES ($1, $2, $3, now())
                        ON CONFLICT (id) DO UPDATE SET title = EXCLUDED.title, updated_at = now()
                        """,
                        chat_id,
                        user_id,
                        title,
                    )
                    if messages:
                        await conn.executemany(
                            """
                            INSERT INTO messages (id, chat_id, role, parts, "order")
                            VALUES ($1, $2, $3, $4::jsonb, $5)
                            """,
                            [
                                (
                                    m.id,
                                    chat_id,
                                    m.role.value,
                                    json.dumps([p.model_dump(mode="json") for p in m.parts]),
                                    index,
                                )
                                for index, m in enumerate(messages)
                            ],
                        )
        except ChatOwnershipError:
            log_service.log_db_operation("upsert", "chats", "rejected", details=chat_id, error="owner mismatch")
            raise
        except DB_ERRORS as exc:
            log_service.log_db_operation("upsert", "chats", "failed", details=chat_id, error=str(exc))
            raise PersistenceError(f"Failed to save chat {chat_id}: {exc}") from exc
        log_service.log_db_operation("upsert", "chats", "success", details=f"{chat_id} ({len(messages)} messages)")

    async def get(self, chat_id: str) -> Chat | None:
        try:
            async with self._pool.acquire() as conn:
                chat = await conn.fetchrow(
                    "SELECT id, user_id, title, created_at, updated_at FROM chats WHERE id = $1",
                    chat_id,
                )
                if chat is None:
                    return None
                rows = await conn.fetch(
                    'SELECT id, role, parts FROM messages WHERE chat_id = $1 ORDER BY "order"',
                    chat_id,
                )
        except DB_ERRORS as exc:
            log_service.log_db_operation("get", "chats", "failed", details=chat_id, error=str(exc))
            raise PersistenceError(f"Failed to load chat {chat_id}: {exc}") from exc

        return Chat(
            id=chat["id"],
            user_id=chat["user_id"],
            title=chat["title"],
            messages=[
                ConversationTurn.model_validate(
                    {"id": row["id"], "role": row["role"], "parts": _coerce_json_list(row["parts"])}
                )
                for row in rows
            ],
            created_at=chat["created_at"],
            updated_at=chat["updated_at"],
        )

    async def list_chats(self, user_id: str) -> list[dict[str, Any]]:
        try:
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, title, created_at, updated_at
                    FROM chats
                    WHERE user_id = $1
                    ORDER BY updated_at DESC
                    """,
                    user_id,
                )
        except DB_ERRORS as exc:
            raise PersistenceError(f"Failed to list chats: {exc}") from exc
        return [dict(r) for r in rows]


async def get_conversation_store(database_url: str) -> ConversationStore:
    if database_url.strip():
        return await PostgresConversationStore.create(database_url.strip())
    return InMemoryConversationStore()
