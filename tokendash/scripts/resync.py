#!/usr/bin/env python3
"""Run one transcript resync against the configured store.

Usage:
  python -m tokendash.scripts.resync
  python -m tokendash.scripts.resync --logs-dir ~/.claude/projects --db /tmp/usage.db
  python -m tokendash.scripts.resync --force
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from tokendash import config
from tokendash.db import connection, sqlite_migrations
from tokendash.db.sync_engine import SyncEngine, SyncSourceError


async def _run(logs_dir: Path, db_path: Path, force: bool) -> int:
    db = await connection.open_connection(db_path)
    try:
        await sqlite_migrations.run_migrations(db)
        engine = SyncEngine(
            db,
            logs_dir,
            window_hours=config.WINDOW_HOURS,
            session_idle_minutes=config.SESSION_IDLE_MINUTES,
        )
        try:
            stats = await engine.resync(force=force, trigger="cli")
        except SyncSourceError as exc:
            print(f"Sync aborted: {exc}")
            return 1
    finally:
        await db.close()

    print(
        f"files_synced={stats['files_synced']} files_skipped={stats['files_skipped']} "
        f"files_failed={stats['files_failed']} lines_processed={stats['lines_processed']} "
        f"lines_failed={stats['lines_failed']} records_failed={stats['records_failed']} "
        f"duration_ms={stats['duration_ms']}"
    )
    return 0


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--logs-dir", default=str(config.LOGS_DIR), help="Root directory of per-project transcript folders")
    parser.add_argument("--db", default=str(config.DB_PATH), help="SQLite database path")
    parser.add_argument("--force", action="store_true", help="Re-read every file regardless of sync state")
    parser.add_argument("--verbose", action="store_true", help="Log per-file progress")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    return asyncio.run(_run(Path(args.logs_dir).expanduser(), Path(args.db).expanduser(), args.force))


if __name__ == "__main__":
    raise SystemExit(main())
