"""SQLite implementation of the usage-window store.

Window bounds are storage-format UTC strings, so ``<``/``>=`` comparisons
are chronological.
"""
from __future__ import annotations

import aiosqlite


class SqliteWindowRepository:
    """Fixed-length, non-overlapping usage windows."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_by_id(self, window_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM session_windows WHERE id = ?", (window_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def find_containing(self, timestamp: str) -> dict | None:
        async with self.db.execute(
            """SELECT * FROM session_windows
               WHERE window_start <= ? AND ? < window_end
               ORDER BY window_start LIMIT 1""",
            (timestamp, timestamp),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def find_predecessor(self, timestamp: str) -> dict | None:
        """Latest window starting at or before ``timestamp``."""
        async with self.db.execute(
            """SELECT * FROM session_windows WHERE window_start <= ?
               ORDER BY window_start DESC LIMIT 1""",
            (timestamp,),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def find_successor(self, timestamp: str) -> dict | None:
        """Earliest window starting strictly after ``timestamp``."""
        async with self.db.execute(
            """SELECT * FROM session_windows WHERE window_start > ?
               ORDER BY window_start ASC LIMIT 1""",
            (timestamp,),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def insert(self, window: dict) -> None:
        await self.db.execute(
            """INSERT INTO session_windows (
                id, window_start, window_end, reset_time, is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                window["id"], window["window_start"], window["window_end"],
                window["reset_time"], 1 if window.get("is_active", True) else 0,
                window["created_at"], window["updated_at"],
            ),
        )

    async def deactivate(self, window_id: str, now: str) -> None:
        await self.db.execute(
            "UPDATE session_windows SET is_active = 0, updated_at = ? WHERE id = ?",
            (now, window_id),
        )

    async def recompute_stats(self, window_id: str, now: str) -> None:
        await self.db.execute(
            """UPDATE session_windows SET
                total_input_tokens=(
                    SELECT COALESCE(SUM(input_tokens), 0) FROM messages WHERE session_window_id = session_windows.id),
                total_output_tokens=(
                    SELECT COALESCE(SUM(output_tokens), 0) FROM messages WHERE session_window_id = session_windows.id),
                total_tokens=(
                    SELECT COALESCE(SUM(input_tokens + output_tokens), 0) FROM messages WHERE session_window_id = session_windows.id),
                message_count=(
                    SELECT COUNT(*) FROM messages WHERE session_window_id = session_windows.id),
                session_count=(
                    SELECT COUNT(DISTINCT session_id) FROM messages WHERE session_window_id = session_windows.id),
                updated_at=?
            WHERE id = ?""",
            (now, window_id),
        )

    async def latest(self) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM session_windows ORDER BY window_start DESC LIMIT 1"
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_recent(self, limit: int = 50, offset: int = 0) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM session_windows ORDER BY window_start DESC LIMIT ? OFFSET ?",
            (limit, offset),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM session_windows") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0
