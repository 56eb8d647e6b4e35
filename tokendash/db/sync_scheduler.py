"""Periodic resync service.

Runs ``SyncEngine.resync`` on a fixed interval in a background task. A tick
that lands while another sync is still running is skipped rather than
queued.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from tokendash.db.sync_engine import SyncInProgressError, SyncSourceError

logger = logging.getLogger("tokendash.scheduler")


class SyncScheduler:
    """Background loop that triggers a resync every ``interval_seconds``."""

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.ticks = 0
        self.skipped = 0

    async def start(self, sync_engine, interval_seconds: int, initial_delay: int = 0) -> None:
        """Start the periodic loop in a background task."""
        if self._running:
            logger.warning("Sync scheduler already running")
            return
        if interval_seconds <= 0:
            logger.info("Periodic sync disabled (interval=%s)", interval_seconds)
            return

        self._running = True
        self._task = asyncio.create_task(
            self._loop(sync_engine, interval_seconds, max(0, initial_delay))
        )
        logger.info(f"Sync scheduler started (every {interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sync scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self, sync_engine) -> dict | None:
        """One scheduled tick. Returns the sync stats, or None when skipped."""
        self.ticks += 1
        try:
            return await sync_engine.resync(wait=False, trigger="schedule")
        except SyncInProgressError:
            self.skipped += 1
            logger.info("Scheduled sync skipped: another sync is in progress")
        except SyncSourceError as exc:
            logger.error(f"Scheduled sync aborted: {exc}")
        return None

    async def _loop(self, sync_engine, interval_seconds: int, initial_delay: int) -> None:
        try:
            if initial_delay:
                await asyncio.sleep(initial_delay)
            while self._running:
                try:
                    await self.run_once(sync_engine)
                except Exception as e:
                    logger.error(f"Scheduled sync failed: {e}")
                await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info("Sync scheduler task cancelled")
        finally:
            self._running = False


# Singleton instance
sync_scheduler = SyncScheduler()
