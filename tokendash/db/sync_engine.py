"""Incremental log → DB sync engine.

Scans the log root for changed transcript files (size/mtime fingerprints
with byte-offset resume), parses new lines, and folds each record into the
session, message and usage-window tables. Every record is its own
transaction, so an interrupted run leaves everything before it committed
and consistent.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from tokendash.date_utils import to_storage, utc_now
from tokendash.db.repositories.messages import SqliteMessageRepository
from tokendash.db.repositories.sessions import SqliteSessionRepository
from tokendash.db.repositories.sync_state import SqliteSyncStateRepository
from tokendash.db.repositories.windows import SqliteWindowRepository
from tokendash.models import LogEntry
from tokendash.observability import (
    record_ingestion,
    record_parser_failure,
    record_token_usage,
    start_span,
)
from tokendash.parsers.log_entries import LogParseError, flatten_content, iter_log_lines, parse_log_line
from tokendash.project_paths import resolve_project
from tokendash.services.session_registry import SessionRegistry
from tokendash.services.sync_state import SyncStateTracker
from tokendash.services.window_aggregator import WindowAggregator, WindowAssignmentError

logger = logging.getLogger("tokendash.sync")

# Failures confined to one record; anything else from the store is fatal.
_RECORD_ERRORS = (aiosqlite.IntegrityError, OverflowError)


class SyncSourceError(RuntimeError):
    """The log root is missing or unreadable."""


class SyncInProgressError(RuntimeError):
    """A sync is already running and the caller asked not to wait."""


def _message_row(entry: LogEntry, window_id: str | None, now: str) -> dict[str, Any]:
    message = entry.message
    usage = message.usage if message else None
    return {
        "id": entry.uuid,
        "session_id": entry.session_id,
        "session_window_id": window_id,
        "parent_uuid": entry.parent_uuid,
        "is_sidechain": entry.is_sidechain,
        "user_type": entry.user_type,
        "message_type": (message.type if message else None) or entry.type,
        "message_role": message.role if message else None,
        "model": message.model if message else None,
        "content": flatten_content(message.content) if message else None,
        "input_tokens": usage.input_tokens if usage else 0,
        "cache_creation_input_tokens": usage.cache_creation_input_tokens if usage else 0,
        "cache_read_input_tokens": usage.cache_read_input_tokens if usage else 0,
        "output_tokens": usage.output_tokens if usage else 0,
        "service_tier": usage.service_tier if usage else None,
        "request_id": entry.request_id,
        "timestamp": to_storage(entry.timestamp),
        "created_at": now,
    }


class SyncEngine:
    """Differential transcript → DB synchronization.

    ``resync`` is the single entry point. An ``asyncio.Lock`` makes sure only
    one sync runs at a time; overlapping triggers either queue behind it or
    are rejected with ``SyncInProgressError``.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        logs_dir: Path,
        window_hours: int = 5,
        session_idle_minutes: int = 30,
    ):
        self.db = db
        self.logs_dir = Path(logs_dir)
        self.session_idle_minutes = session_idle_minutes
        self.session_repo = SqliteSessionRepository(db)
        self.message_repo = SqliteMessageRepository(db)
        self.window_repo = SqliteWindowRepository(db)
        self.sync_repo = SqliteSyncStateRepository(db)
        self.tracker = SyncStateTracker(self.sync_repo)
        self.sessions = SessionRegistry(self.session_repo)
        self.windows = WindowAggregator(self.window_repo, window_hours)
        self._sync_lock = asyncio.Lock()
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    # ── Operation tracking ──────────────────────────────────────────

    async def start_operation(
        self,
        kind: str,
        trigger: str = "api",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create an observable operation and return its ID."""
        return await self._start_operation(kind, trigger, metadata or {})

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        """Return a single operation snapshot."""
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            if not op:
                return None
            return copy.deepcopy(op)

    async def get_observability_snapshot(self) -> dict[str, Any]:
        """Return live sync observability payload for API status."""
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
            latest = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order[:5]
                if op_id in self._operations
            ]
            return {
                "syncInFlight": self.is_syncing,
                "activeOperationCount": len(active),
                "activeOperations": active,
                "recentOperations": latest,
                "trackedOperationCount": len(self._operations),
            }

    async def _start_operation(self, kind: str, trigger: str, metadata: dict[str, Any]) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "message": "",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "counters": {},
            "stats": {},
            "metadata": metadata,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (trigger=%s)", op_id, kind, trigger)
        return op_id

    async def _update_operation(
        self,
        operation_id: str | None,
        *,
        phase: str | None = None,
        message: str | None = None,
        counters: dict[str, Any] | None = None,
    ) -> None:
        if not operation_id:
            return
        now = datetime.now(timezone.utc).isoformat()
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase:
                operation["phase"] = phase
            if message is not None:
                operation["message"] = message
            if counters:
                operation.setdefault("counters", {}).update(counters)
            operation["updatedAt"] = now

    async def _finish_operation(
        self,
        operation_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        if not operation_id:
            return
        finished = datetime.now(timezone.utc)
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["updatedAt"] = finished.isoformat()
            operation["finishedAt"] = finished.isoformat()
            if stats:
                operation.setdefault("stats", {}).update(stats)
            if error:
                operation["error"] = error
            started_at = datetime.fromisoformat(operation["startedAt"])
            operation["durationMs"] = max(0, int((finished - started_at).total_seconds() * 1000))
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)

    # ── Sync entry point ────────────────────────────────────────────

    async def resync(
        self,
        force: bool = False,
        wait: bool = True,
        operation_id: str | None = None,
        trigger: str = "api",
    ) -> dict:
        """Bring the store up to date with the log root.

        Safe to call repeatedly: unchanged files are skipped and every write
        is an upsert. Returns a stats dict.
        """
        if not wait and self._sync_lock.locked():
            await self._finish_operation(operation_id, status="skipped", error="sync already in progress")
            raise SyncInProgressError("a sync is already in progress")

        async with self._sync_lock:
            if not operation_id:
                operation_id = await self._start_operation(
                    "resync",
                    trigger,
                    {"force": bool(force), "logsDir": str(self.logs_dir)},
                )
            with start_span("tokendash.resync", {"trigger": trigger, "force": bool(force)}):
                return await self._run_sync(force, operation_id)

    async def _run_sync(self, force: bool, operation_id: str) -> dict:
        stats = {
            "projects_scanned": 0,
            "files_scanned": 0,
            "files_synced": 0,
            "files_skipped": 0,
            "files_failed": 0,
            "lines_processed": 0,
            "lines_failed": 0,
            "records_failed": 0,
            "records_unwindowed": 0,
            "sessions_completed": 0,
            "sessions_reactivated": 0,
            "duration_ms": 0,
            "operation_id": operation_id,
        }
        t0 = time.monotonic()
        await self._update_operation(operation_id, phase="discovery", message="Scanning log directories")

        try:
            project_dirs = self._discover_project_dirs()
            await self._update_operation(operation_id, phase="ingest", message="Ingesting log files")

            for project_dir in project_dirs:
                stats["projects_scanned"] += 1
                try:
                    log_files = sorted(project_dir.glob("*.jsonl"))
                except OSError as exc:
                    logger.error("Cannot list project directory %s: %s", project_dir, exc)
                    continue

                for path in log_files:
                    stats["files_scanned"] += 1
                    try:
                        file_stats = await self._sync_file(path, project_dir.name, force)
                    except OSError as exc:
                        stats["files_failed"] += 1
                        logger.error("Skipping unreadable log file %s: %s", path, exc)
                        record_ingestion("failed", 0.0, project=project_dir.name)
                        continue

                    if file_stats["status"] == "skipped":
                        stats["files_skipped"] += 1
                        continue
                    stats["files_synced"] += 1
                    stats["lines_processed"] += file_stats["lines_processed"]
                    stats["lines_failed"] += file_stats["lines_failed"]
                    stats["records_failed"] += file_stats["records_failed"]
                    stats["records_unwindowed"] += file_stats["records_unwindowed"]

                await self._update_operation(
                    operation_id,
                    counters={
                        "projectsScanned": stats["projects_scanned"],
                        "filesSynced": stats["files_synced"],
                        "filesSkipped": stats["files_skipped"],
                        "linesProcessed": stats["lines_processed"],
                    },
                )

            await self._update_operation(operation_id, phase="sessions", message="Refreshing session status")
            closed, reopened = await self.sessions.close_idle(utc_now(), self.session_idle_minutes)
            stats["sessions_completed"] = closed
            stats["sessions_reactivated"] = reopened

            stats["duration_ms"] = int((time.monotonic() - t0) * 1000)
            await self._finish_operation(operation_id, status="completed", stats=stats)
            logger.info(
                "Sync complete: %s projects, %s files synced, %s skipped, %s failed, "
                "%s lines processed, %s malformed lines, %s failed records, "
                "%s records without a window in %sms",
                stats["projects_scanned"], stats["files_synced"], stats["files_skipped"],
                stats["files_failed"], stats["lines_processed"], stats["lines_failed"],
                stats["records_failed"], stats["records_unwindowed"], stats["duration_ms"],
            )
            return stats
        except Exception as exc:
            stats["duration_ms"] = int((time.monotonic() - t0) * 1000)
            await self._finish_operation(operation_id, status="failed", stats=stats, error=str(exc))
            raise

    def _discover_project_dirs(self) -> list[Path]:
        if not self.logs_dir.is_dir():
            raise SyncSourceError(f"log directory not found: {self.logs_dir}")
        try:
            return sorted(p for p in self.logs_dir.iterdir() if p.is_dir())
        except OSError as exc:
            raise SyncSourceError(f"cannot read log directory {self.logs_dir}: {exc}") from exc

    # ── Per-file ingestion ──────────────────────────────────────────

    async def _sync_file(self, path: Path, project_dir_name: str, force: bool = False) -> dict:
        """Ingest new content of one transcript file.

        Raises OSError when the file cannot be read; progress is then left
        untouched so the next run retries the file.
        """
        decision = await self.tracker.should_process(path, force)
        if not decision.process:
            return {
                "status": "skipped",
                "lines_processed": 0,
                "lines_failed": 0,
                "records_failed": 0,
                "records_unwindowed": 0,
            }

        t0 = time.monotonic()
        processed_offset = decision.resume_offset
        lines_processed = 0
        lines_failed = 0
        records_failed = 0
        records_unwindowed = 0
        if decision.resume_offset:
            logger.info("Resuming %s at byte %s (%s)", path, decision.resume_offset, decision.reason)

        for line in iter_log_lines(path, decision.resume_offset):
            try:
                entry = parse_log_line(line.text)
            except LogParseError as exc:
                if not line.complete:
                    # Writer is mid-line; pick it up once the newline lands.
                    logger.debug("Deferring partial trailing line in %s", path)
                    break
                lines_failed += 1
                processed_offset = line.end_offset
                logger.warning("Skipping malformed line %s in %s: %s", line.line_number, path.name, exc)
                continue

            try:
                windowed = await self._ingest_entry(entry, project_dir_name)
            except _RECORD_ERRORS as exc:
                await self.db.rollback()
                records_failed += 1
                logger.error(
                    "Failed to store entry at line %s in %s (uuid=%s session=%s): %s",
                    line.line_number, path, entry.uuid, entry.session_id, exc,
                )
            except Exception:
                # Nothing of a half-written record may reach a later commit.
                await self.db.rollback()
                raise
            else:
                lines_processed += 1
                if not windowed:
                    records_unwindowed += 1
            if line.complete:
                processed_offset = line.end_offset

        parse_ms = int((time.monotonic() - t0) * 1000)
        await self.tracker.record_progress(
            path,
            decision,
            processed_offset,
            lines_processed,
            lines_failed,
            parse_ms,
        )

        result = "partial" if (lines_failed or records_failed) else "success"
        record_ingestion(result, parse_ms, project=project_dir_name)
        record_parser_failure("line", project=project_dir_name, count=lines_failed)
        record_parser_failure("record", project=project_dir_name, count=records_failed)
        logger.info(
            "Processed %s lines from %s (%s malformed, %s failed, %s without window, %s)",
            lines_processed, path, lines_failed, records_failed, records_unwindowed, decision.reason,
        )
        return {
            "status": "synced",
            "lines_processed": lines_processed,
            "lines_failed": lines_failed,
            "records_failed": records_failed,
            "records_unwindowed": records_unwindowed,
        }

    async def _ingest_entry(self, entry: LogEntry, project_dir_name: str) -> bool:
        """Fold one entry into sessions, windows and messages as one transaction.

        Returns False when the message was stored without a usage window
        because no fixed-length window fits between its stored neighbours.
        """
        project_name, project_path = resolve_project(entry.cwd, project_dir_name)
        await self.sessions.upsert(entry.session_id, project_name, project_path, entry.timestamp)

        try:
            window = await self.windows.assign_window(entry.timestamp)
        except WindowAssignmentError as exc:
            logger.warning("Storing message %s without a usage window: %s", entry.uuid, exc)
            window = None
        window_id = window["id"] if window else None
        previous = await self.message_repo.get_assignment(entry.uuid)

        message = _message_row(entry, window_id, to_storage(utc_now()))
        await self.message_repo.upsert(message)

        if window_id:
            await self.windows.recompute_stats(window_id)
        await self.sessions.refresh_totals(entry.session_id)
        if previous:
            previous_session_id, previous_window_id = previous
            if previous_window_id and previous_window_id != window_id:
                await self.windows.recompute_stats(previous_window_id)
            if previous_session_id != entry.session_id:
                await self.sessions.refresh_totals(previous_session_id)

        await self.db.commit()
        record_token_usage(
            project=project_name,
            model=message["model"] or "",
            token_input=message["input_tokens"],
            token_output=message["output_tokens"],
        )
        return window_id is not None
