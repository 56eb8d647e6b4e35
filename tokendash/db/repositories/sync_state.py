"""SQLite repository for per-file sync bookkeeping."""
from __future__ import annotations

import aiosqlite


class SqliteSyncStateRepository:
    """Track file sync state for incremental scanning."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_sync_state(self, file_path: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sync_state WHERE file_path = ?", (file_path,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def upsert_sync_state(self, state: dict) -> None:
        await self.db.execute(
            """INSERT INTO sync_state (
                   file_path, file_size, file_mtime, processed_offset, tail_hash,
                   lines_processed, lines_failed, last_synced, parse_ms
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(file_path) DO UPDATE SET
                 file_size=excluded.file_size, file_mtime=excluded.file_mtime,
                 processed_offset=excluded.processed_offset, tail_hash=excluded.tail_hash,
                 lines_processed=excluded.lines_processed, lines_failed=excluded.lines_failed,
                 last_synced=excluded.last_synced, parse_ms=excluded.parse_ms""",
            (
                state["file_path"], state["file_size"], state["file_mtime"],
                state.get("processed_offset", 0), state.get("tail_hash", ""),
                state.get("lines_processed", 0), state.get("lines_failed", 0),
                state["last_synced"], state.get("parse_ms", 0),
            ),
        )
        await self.db.commit()
