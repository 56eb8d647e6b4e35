"""Session lifecycle: creation on first message, bounds and totals after."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from tokendash.date_utils import to_storage, utc_now
from tokendash.db.repositories.sessions import SqliteSessionRepository

logger = logging.getLogger("tokendash.sessions")


class SessionRegistry:
    def __init__(self, repo: SqliteSessionRepository):
        self.repo = repo

    async def upsert(
        self,
        session_id: str,
        project_name: str,
        project_path: str,
        timestamp: datetime,
    ) -> None:
        """Create the session if absent, otherwise widen its activity bounds.

        Project name and path keep whatever the first write stored.
        """
        await self.repo.upsert(
            session_id,
            project_name,
            project_path,
            to_storage(timestamp),
            to_storage(utc_now()),
        )

    async def refresh_totals(self, session_id: str) -> None:
        await self.repo.refresh_totals(session_id, to_storage(utc_now()))

    async def close_idle(self, now: datetime, idle_minutes: int) -> tuple[int, int]:
        cutoff = now - timedelta(minutes=max(0, idle_minutes))
        closed, reopened = await self.repo.mark_idle(to_storage(cutoff), to_storage(now))
        if closed or reopened:
            logger.info("Session status refresh: %s completed, %s reactivated", closed, reopened)
        return closed, reopened
