"""SQLite implementation of the session store.

Write methods leave the transaction open; the sync engine commits once per
ingested record.
"""
from __future__ import annotations

import aiosqlite


class SqliteSessionRepository:
    """SQLite-backed session summaries keyed by session id."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(
        self,
        session_id: str,
        project_name: str,
        project_path: str,
        timestamp: str,
        now: str,
    ) -> None:
        # Identity columns keep their first value; only the activity bounds move.
        await self.db.execute(
            """INSERT INTO sessions (
                id, project_name, project_path, start_time, end_time,
                status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 'active', ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                start_time=MIN(sessions.start_time, excluded.start_time),
                end_time=MAX(COALESCE(sessions.end_time, excluded.end_time), excluded.end_time),
                updated_at=excluded.updated_at
            """,
            (session_id, project_name, project_path, timestamp, timestamp, now, now),
        )

    async def refresh_totals(self, session_id: str, now: str) -> None:
        await self.db.execute(
            """UPDATE sessions SET
                total_input_tokens=(
                    SELECT COALESCE(SUM(input_tokens), 0) FROM messages WHERE session_id = sessions.id),
                total_output_tokens=(
                    SELECT COALESCE(SUM(output_tokens), 0) FROM messages WHERE session_id = sessions.id),
                total_tokens=(
                    SELECT COALESCE(SUM(input_tokens + output_tokens), 0) FROM messages WHERE session_id = sessions.id),
                message_count=(
                    SELECT COUNT(*) FROM messages WHERE session_id = sessions.id),
                updated_at=?
            WHERE id = ?""",
            (now, session_id),
        )

    async def mark_idle(self, cutoff: str, now: str) -> tuple[int, int]:
        """Complete sessions idle since ``cutoff``; reopen ones active after it."""
        cur = await self.db.execute(
            """UPDATE sessions SET status='completed', updated_at=?
               WHERE status='active' AND end_time < ?""",
            (now, cutoff),
        )
        closed = cur.rowcount
        await cur.close()
        cur = await self.db.execute(
            """UPDATE sessions SET status='active', updated_at=?
               WHERE status='completed' AND end_time >= ?""",
            (now, cutoff),
        )
        reopened = cur.rowcount
        await cur.close()
        await self.db.commit()
        return closed, reopened

    async def get_by_id(self, session_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_recent(self, limit: int, offset: int = 0) -> list[dict]:
        async with self.db.execute(
            """SELECT * FROM sessions
               ORDER BY COALESCE(end_time, start_time) DESC, id
               LIMIT ? OFFSET ?""",
            (limit, offset),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def count(self, status: str | None = None) -> int:
        if status:
            async with self.db.execute(
                "SELECT COUNT(*) FROM sessions WHERE status = ?", (status,)
            ) as cur:
                row = await cur.fetchone()
        else:
            async with self.db.execute("SELECT COUNT(*) FROM sessions") as cur:
                row = await cur.fetchone()
        return row[0] if row else 0

    async def get_activity(self, session_id: str) -> dict:
        """Per-role and per-model message/token breakdown for one session."""
        breakdown: dict = {"by_role": [], "by_model": []}
        for key, column in (("by_role", "message_role"), ("by_model", "model")):
            async with self.db.execute(
                f"""SELECT
                        COALESCE({column}, 'unknown') AS key,
                        COUNT(*) AS message_count,
                        COALESCE(SUM(input_tokens), 0) AS input_tokens,
                        COALESCE(SUM(output_tokens), 0) AS output_tokens
                    FROM messages WHERE session_id = ?
                    GROUP BY COALESCE({column}, 'unknown')
                    ORDER BY message_count DESC, key""",
                (session_id,),
            ) as cur:
                breakdown[key] = [dict(r) for r in await cur.fetchall()]

        async with self.db.execute(
            """SELECT
                   COALESCE(SUM(is_sidechain), 0) AS sidechain_messages,
                   MIN(timestamp) AS first_message_at,
                   MAX(timestamp) AS last_message_at
               FROM messages WHERE session_id = ?""",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
        breakdown.update(dict(row) if row else {})
        return breakdown
