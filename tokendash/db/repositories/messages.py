"""SQLite implementation of the message store."""
from __future__ import annotations

import aiosqlite


class SqliteMessageRepository:
    """Normalized transcript messages, one row per source entry uuid."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_assignment(self, message_id: str) -> tuple[str, str | None] | None:
        """``(session_id, session_window_id)`` of a stored message, if any."""
        async with self.db.execute(
            "SELECT session_id, session_window_id FROM messages WHERE id = ?", (message_id,)
        ) as cur:
            row = await cur.fetchone()
            return (row[0], row[1]) if row else None

    async def upsert(self, message: dict) -> None:
        """Insert or overwrite a message in place. Leaves the transaction open."""
        await self.db.execute(
            """INSERT INTO messages (
                id, session_id, session_window_id, parent_uuid, is_sidechain,
                user_type, message_type, message_role, model, content,
                input_tokens, cache_creation_input_tokens, cache_read_input_tokens,
                output_tokens, service_tier, request_id, timestamp, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                session_id=excluded.session_id,
                session_window_id=excluded.session_window_id,
                parent_uuid=excluded.parent_uuid,
                is_sidechain=excluded.is_sidechain,
                user_type=excluded.user_type,
                message_type=excluded.message_type,
                message_role=excluded.message_role,
                model=excluded.model,
                content=excluded.content,
                input_tokens=excluded.input_tokens,
                cache_creation_input_tokens=excluded.cache_creation_input_tokens,
                cache_read_input_tokens=excluded.cache_read_input_tokens,
                output_tokens=excluded.output_tokens,
                service_tier=excluded.service_tier,
                request_id=excluded.request_id,
                timestamp=excluded.timestamp
            """,
            (
                message["id"], message["session_id"], message.get("session_window_id"),
                message.get("parent_uuid"), 1 if message.get("is_sidechain") else 0,
                message.get("user_type"), message.get("message_type"),
                message.get("message_role"), message.get("model"), message.get("content"),
                message.get("input_tokens", 0),
                message.get("cache_creation_input_tokens", 0),
                message.get("cache_read_input_tokens", 0),
                message.get("output_tokens", 0),
                message.get("service_tier"), message.get("request_id"),
                message["timestamp"], message["created_at"],
            ),
        )

    async def list_for_session(self, session_id: str, offset: int, limit: int) -> list[dict]:
        async with self.db.execute(
            """SELECT * FROM messages WHERE session_id = ?
               ORDER BY timestamp ASC, id ASC
               LIMIT ? OFFSET ?""",
            (session_id, limit, offset),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def count_for_session(self, session_id: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM messages WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM messages") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0
