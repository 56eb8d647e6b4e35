"""Read-only API routers for sessions, usage and windows."""
from __future__ import annotations

import math

from fastapi import APIRouter, HTTPException, Query

from tokendash import config
from tokendash.date_utils import from_storage
from tokendash.db import connection
from tokendash.db.repositories.messages import SqliteMessageRepository
from tokendash.db.repositories.sessions import SqliteSessionRepository
from tokendash.db.repositories.windows import SqliteWindowRepository
from tokendash.models import (
    ActivityBucket,
    AvailableTokens,
    Message,
    PaginatedMessages,
    Session,
    SessionActivity,
    SessionDetail,
    SessionList,
    SessionWindow,
    SessionWindowList,
    TokenUsage,
)
from tokendash.services.token_usage import UnknownPlanError, available_tokens, build_usage_snapshot

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])
usage_router = APIRouter(prefix="/api", tags=["usage"])


def _session_from_row(row: dict) -> Session:
    started = from_storage(row.get("start_time"))
    ended = from_storage(row.get("end_time"))
    duration = int((ended - started).total_seconds()) if started and ended else 0
    return Session(
        id=row["id"],
        project_name=row["project_name"],
        project_path=row["project_path"],
        start_time=row["start_time"],
        end_time=row.get("end_time"),
        total_input_tokens=row.get("total_input_tokens") or 0,
        total_output_tokens=row.get("total_output_tokens") or 0,
        total_tokens=row.get("total_tokens") or 0,
        message_count=row.get("message_count") or 0,
        status=row.get("status") or "active",
        created_at=row.get("created_at") or "",
        duration=max(0, duration),
        is_active=(row.get("status") == "active"),
        last_activity=row.get("end_time") or row["start_time"],
    )


async def _usage_or_400(plan: str) -> TokenUsage:
    db = await connection.get_connection()
    try:
        return await build_usage_snapshot(db, plan)
    except UnknownPlanError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# ── Sessions ────────────────────────────────────────────────────────

@sessions_router.get("", response_model=SessionList)
async def list_sessions(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Sessions ordered by most recent activity."""
    db = await connection.get_connection()
    repo = SqliteSessionRepository(db)
    rows = await repo.list_recent(limit, offset)
    total = await repo.count()
    return SessionList(sessions=[_session_from_row(r) for r in rows], count=total)


@sessions_router.get("/{session_id}", response_model=SessionDetail)
async def get_session(
    session_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    plan: str = Query(config.DEFAULT_PLAN),
):
    """Session summary, one page of its messages, and the usage snapshot."""
    db = await connection.get_connection()
    row = await SqliteSessionRepository(db).get_by_id(session_id)
    if not row:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")

    message_repo = SqliteMessageRepository(db)
    total = await message_repo.count_for_session(session_id)
    rows = await message_repo.list_for_session(session_id, (page - 1) * page_size, page_size)
    total_pages = math.ceil(total / page_size) if total else 0
    messages = PaginatedMessages(
        messages=[Message(**r) for r in rows],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_previous=page > 1,
    )
    return SessionDetail(
        session=_session_from_row(row),
        messages=messages,
        token_usage=await _usage_or_400(plan),
    )


@sessions_router.get("/{session_id}/activity", response_model=SessionActivity)
async def get_session_activity(session_id: str):
    """Per-role and per-model breakdown of a session's messages."""
    db = await connection.get_connection()
    repo = SqliteSessionRepository(db)
    if not await repo.get_by_id(session_id):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")

    activity = await repo.get_activity(session_id)

    def _buckets(items: list[dict]) -> list[ActivityBucket]:
        return [
            ActivityBucket(
                key=item["key"],
                message_count=item["message_count"],
                input_tokens=item["input_tokens"],
                output_tokens=item["output_tokens"],
                total_tokens=item["input_tokens"] + item["output_tokens"],
            )
            for item in items
        ]

    return SessionActivity(
        session_id=session_id,
        by_role=_buckets(activity.get("by_role", [])),
        by_model=_buckets(activity.get("by_model", [])),
        sidechain_messages=activity.get("sidechain_messages") or 0,
        first_message_at=activity.get("first_message_at"),
        last_message_at=activity.get("last_message_at"),
    )


# ── Usage ───────────────────────────────────────────────────────────

@usage_router.get("/claude/sessions/recent", response_model=SessionList)
async def get_recent_sessions(limit: int = Query(20, ge=1, le=200)):
    """Dashboard shortcut for the most recently active sessions."""
    return await list_sessions(limit=limit, offset=0)


@usage_router.get("/token-usage", response_model=TokenUsage)
async def get_token_usage(plan: str = Query(config.DEFAULT_PLAN)):
    """Usage snapshot for the current window."""
    return await _usage_or_400(plan)


@usage_router.get("/claude/available-tokens", response_model=AvailableTokens)
async def get_available_tokens(plan: str = Query(config.DEFAULT_PLAN)):
    return available_tokens(await _usage_or_400(plan))


@usage_router.get("/session-windows", response_model=SessionWindowList)
async def list_session_windows(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Usage windows, newest first."""
    db = await connection.get_connection()
    repo = SqliteWindowRepository(db)
    rows = await repo.list_recent(limit, offset)
    return SessionWindowList(
        windows=[SessionWindow(**r) for r in rows],
        count=await repo.count(),
    )
