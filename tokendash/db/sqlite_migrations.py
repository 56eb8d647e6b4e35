"""Database schema creation and versioning.

All CREATE TABLE statements for the usage store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("tokendash.db")

SCHEMA_VERSION = 2

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Sync State (Incremental Change Detection) ──────────────────
CREATE TABLE IF NOT EXISTS sync_state (
    file_path        TEXT PRIMARY KEY,
    file_size        INTEGER NOT NULL DEFAULT 0,
    file_mtime       REAL NOT NULL DEFAULT 0,
    processed_offset INTEGER NOT NULL DEFAULT 0,
    tail_hash        TEXT NOT NULL DEFAULT '',
    lines_processed  INTEGER DEFAULT 0,
    lines_failed     INTEGER DEFAULT 0,
    last_synced      TEXT NOT NULL,
    parse_ms         INTEGER DEFAULT 0
);

-- ── 2. Sessions ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS sessions (
    id                  TEXT PRIMARY KEY,
    project_name        TEXT NOT NULL,
    project_path        TEXT NOT NULL,
    start_time          TEXT NOT NULL,
    end_time            TEXT,
    total_input_tokens  INTEGER DEFAULT 0,
    total_output_tokens INTEGER DEFAULT 0,
    total_tokens        INTEGER DEFAULT 0,
    message_count       INTEGER DEFAULT 0,
    status              TEXT DEFAULT 'active',
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_project_name ON sessions(project_name);
CREATE INDEX IF NOT EXISTS idx_sessions_start_time   ON sessions(start_time);
CREATE INDEX IF NOT EXISTS idx_sessions_end_time     ON sessions(end_time DESC);
CREATE INDEX IF NOT EXISTS idx_sessions_status       ON sessions(status);

-- ── 3. Session Windows (fixed-length usage buckets) ────────────────
CREATE TABLE IF NOT EXISTS session_windows (
    id                  TEXT PRIMARY KEY,
    window_start        TEXT NOT NULL,
    window_end          TEXT NOT NULL,
    reset_time          TEXT NOT NULL,
    total_input_tokens  INTEGER DEFAULT 0,
    total_output_tokens INTEGER DEFAULT 0,
    total_tokens        INTEGER DEFAULT 0,
    message_count       INTEGER DEFAULT 0,
    session_count       INTEGER DEFAULT 0,
    is_active           INTEGER DEFAULT 1,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_session_windows_start ON session_windows(window_start);
CREATE INDEX IF NOT EXISTS idx_session_windows_times  ON session_windows(window_start, window_end);
CREATE INDEX IF NOT EXISTS idx_session_windows_active ON session_windows(is_active);

-- ── 4. Messages ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS messages (
    id                          TEXT PRIMARY KEY,
    session_id                  TEXT NOT NULL REFERENCES sessions(id),
    session_window_id           TEXT REFERENCES session_windows(id),
    parent_uuid                 TEXT,
    is_sidechain                INTEGER DEFAULT 0,
    user_type                   TEXT,
    message_type                TEXT,
    message_role                TEXT,
    model                       TEXT,
    content                     TEXT,
    input_tokens                INTEGER DEFAULT 0,
    cache_creation_input_tokens INTEGER DEFAULT 0,
    cache_read_input_tokens     INTEGER DEFAULT 0,
    output_tokens               INTEGER DEFAULT 0,
    service_tier                TEXT,
    request_id                  TEXT,
    timestamp                   TEXT NOT NULL,
    created_at                  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_session_id        ON messages(session_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_session_window_id ON messages(session_window_id);
CREATE INDEX IF NOT EXISTS idx_messages_timestamp         ON messages(timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_message_role      ON messages(message_role);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)

    # Version 1 stores tracked only size/mtime; resume bookkeeping came later.
    await _ensure_column(db, "sync_state", "processed_offset", "INTEGER NOT NULL DEFAULT 0")
    await _ensure_column(db, "sync_state", "tail_hash", "TEXT NOT NULL DEFAULT ''")
    await _ensure_column(db, "sync_state", "lines_processed", "INTEGER DEFAULT 0")
    await _ensure_column(db, "sync_state", "lines_failed", "INTEGER DEFAULT 0")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
