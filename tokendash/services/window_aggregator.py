"""Fixed-length usage windows.

Every message timestamp maps to at most one window whose ``[start, end)``
interval contains it. Windows are keyed by interval, never merged, split
or deleted, and all have the same length. A late timestamp squeezed into a
gap shorter than one window gets no window; ``assign_window`` raises
``WindowAssignmentError`` and the caller stores the message unwindowed.
"""
from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta

from tokendash.date_utils import from_storage, to_storage, utc_now
from tokendash.db.repositories.windows import SqliteWindowRepository

logger = logging.getLogger("tokendash.windows")


class WindowAssignmentError(ValueError):
    """No fixed-length window can cover a timestamp without overlapping another."""


def window_storage_id(window_start: str) -> str:
    digest = hashlib.sha1(window_start.encode("utf-8")).hexdigest()[:20]
    return f"W-{digest}"


class WindowAggregator:
    def __init__(self, repo: SqliteWindowRepository, window_hours: int = 5):
        if window_hours <= 0:
            raise ValueError("window_hours must be positive")
        self.repo = repo
        self.length = timedelta(hours=window_hours)

    async def assign_window(self, timestamp: datetime) -> dict:
        """Return the window containing ``timestamp``, creating one if needed."""
        ts = to_storage(timestamp)
        existing = await self.repo.find_containing(ts)
        if existing:
            return existing

        start = from_storage(ts)
        end = start + self.length
        predecessor = await self.repo.find_predecessor(ts)
        successor = await self.repo.find_successor(ts)

        if successor:
            successor_start = from_storage(successor["window_start"])
            if successor_start < end:
                # Late, out-of-order timestamp: anchor against the next window.
                start = successor_start - self.length
                end = successor_start
                if predecessor and from_storage(predecessor["window_end"]) > start:
                    raise WindowAssignmentError(
                        f"no {self.length} gap for {ts} between "
                        f"{predecessor['window_end']} and {successor['window_start']}"
                    )

        now = to_storage(utc_now())
        if predecessor and predecessor["is_active"] and predecessor["window_end"] <= ts:
            await self.repo.deactivate(predecessor["id"], now)

        window_start = to_storage(start)
        window_end = to_storage(end)
        window = {
            "id": window_storage_id(window_start),
            "window_start": window_start,
            "window_end": window_end,
            "reset_time": window_end,
            # Only the newest window is live; backfilled past windows are not.
            "is_active": successor is None,
            "created_at": now,
            "updated_at": now,
        }
        await self.repo.insert(window)
        logger.info(
            "Created usage window %s [%s, %s) active=%s",
            window["id"], window_start, window_end, window["is_active"],
        )
        return {
            **window,
            "is_active": 1 if window["is_active"] else 0,
            "total_input_tokens": 0,
            "total_output_tokens": 0,
            "total_tokens": 0,
            "message_count": 0,
            "session_count": 0,
        }

    async def recompute_stats(self, window_id: str) -> None:
        await self.repo.recompute_stats(window_id, to_storage(utc_now()))
