"""Per-file change detection for differential sync.

A file is skipped when its size and mtime match the stored fingerprint,
resumed from the stored byte offset when it only grew (the bytes just
before the offset still hash the same), and re-read from the start
otherwise.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple

from tokendash.date_utils import to_storage, utc_now
from tokendash.db.repositories.sync_state import SqliteSyncStateRepository

logger = logging.getLogger("tokendash.sync")

TAIL_HASH_BYTES = 4096


@dataclass(frozen=True)
class FileFingerprint:
    size: int
    mtime: float

    @classmethod
    def of(cls, path: Path) -> "FileFingerprint":
        stat = path.stat()
        return cls(size=stat.st_size, mtime=stat.st_mtime)


class SyncDecision(NamedTuple):
    process: bool
    resume_offset: int
    reason: str  # "new" | "unchanged" | "appended" | "rewritten" | "forced"
    fingerprint: FileFingerprint


def tail_hash(path: Path, offset: int) -> str:
    """md5 of up to TAIL_HASH_BYTES ending at ``offset``."""
    if offset <= 0:
        return ""
    start = max(0, offset - TAIL_HASH_BYTES)
    with path.open("rb") as handle:
        handle.seek(start)
        chunk = handle.read(offset - start)
    if len(chunk) != offset - start:
        return ""
    return hashlib.md5(chunk).hexdigest()


class SyncStateTracker:
    def __init__(self, repo: SqliteSyncStateRepository):
        self.repo = repo

    async def should_process(self, path: Path, force: bool = False) -> SyncDecision:
        """Decide whether ``path`` needs work and from which byte offset.

        Raises OSError when the file cannot be inspected.
        """
        fingerprint = FileFingerprint.of(path)
        if force:
            return SyncDecision(True, 0, "forced", fingerprint)

        cached = await self.repo.get_sync_state(str(path))
        if not cached:
            return SyncDecision(True, 0, "new", fingerprint)

        if cached["file_size"] == fingerprint.size and cached["file_mtime"] == fingerprint.mtime:
            return SyncDecision(False, int(cached["processed_offset"] or 0), "unchanged", fingerprint)

        offset = int(cached["processed_offset"] or 0)
        if 0 < offset <= fingerprint.size and cached["tail_hash"]:
            if tail_hash(path, offset) == cached["tail_hash"]:
                return SyncDecision(True, offset, "appended", fingerprint)
        return SyncDecision(True, 0, "rewritten", fingerprint)

    async def record_progress(
        self,
        path: Path,
        decision: SyncDecision,
        processed_offset: int,
        lines_processed: int,
        lines_failed: int,
        parse_ms: int = 0,
    ) -> None:
        """Commit the fingerprint once every record from ``path`` is durable."""
        file_path = str(path)
        if decision.resume_offset > 0:
            cached = await self.repo.get_sync_state(file_path) or {}
            lines_processed += int(cached.get("lines_processed") or 0)
            lines_failed += int(cached.get("lines_failed") or 0)

        await self.repo.upsert_sync_state({
            "file_path": file_path,
            "file_size": decision.fingerprint.size,
            "file_mtime": decision.fingerprint.mtime,
            "processed_offset": processed_offset,
            "tail_hash": tail_hash(path, processed_offset),
            "lines_processed": lines_processed,
            "lines_failed": lines_failed,
            "last_synced": to_storage(utc_now()),
            "parse_ms": parse_ms,
        })
        logger.debug(
            "Recorded sync state for %s (offset=%s processed=%s failed=%s)",
            file_path, processed_offset, lines_processed, lines_failed,
        )
