"""Plan-relative usage metrics derived from stored window aggregates."""
from __future__ import annotations

from datetime import datetime
from typing import Mapping

import aiosqlite

from tokendash import config
from tokendash.date_utils import from_storage, utc_now
from tokendash.db.repositories.sessions import SqliteSessionRepository
from tokendash.db.repositories.windows import SqliteWindowRepository
from tokendash.models import AvailableTokens, TokenUsage


class UnknownPlanError(ValueError):
    def __init__(self, plan: str, known: list[str]):
        super().__init__(f"unknown plan {plan!r}; expected one of {', '.join(sorted(known))}")
        self.plan = plan


def plan_limit(plan: str, plan_limits: Mapping[str, int] | None = None) -> tuple[str, int]:
    limits = plan_limits if plan_limits is not None else config.PLAN_LIMITS
    key = (plan or "").strip().lower()
    if key not in limits:
        raise UnknownPlanError(plan, list(limits))
    return key, int(limits[key])


def compute_usage(
    plan: str,
    window: Mapping | None,
    *,
    now: datetime,
    active_sessions: int = 0,
    plan_limits: Mapping[str, int] | None = None,
) -> TokenUsage:
    """Pure usage computation over the latest window row.

    A window whose end has passed no longer counts toward usage; its bounds
    are still reported so callers can show when the last window reset.
    """
    plan_key, limit = plan_limit(plan, plan_limits)
    usage = TokenUsage(plan=plan_key, usage_limit=limit, available_tokens=limit, active_sessions=active_sessions)
    if not window:
        return usage

    start = from_storage(window["window_start"])
    end = from_storage(window["window_end"])
    usage.window_start = window["window_start"]
    usage.window_end = window["window_end"]
    usage.reset_time = window["reset_time"]
    if start is None or end is None or now >= end:
        return usage

    usage.input_tokens = int(window["total_input_tokens"] or 0)
    usage.output_tokens = int(window["total_output_tokens"] or 0)
    usage.total_tokens = usage.input_tokens + usage.output_tokens
    usage.total_messages = int(window["message_count"] or 0)
    usage.available_tokens = max(0, limit - usage.total_tokens)

    elapsed_minutes = (min(now, end) - start).total_seconds() / 60
    if elapsed_minutes > 0:
        usage.usage_rate = round(usage.total_tokens / elapsed_minutes, 4)
    return usage


async def build_usage_snapshot(
    db: aiosqlite.Connection,
    plan: str,
    now: datetime | None = None,
    plan_limits: Mapping[str, int] | None = None,
) -> TokenUsage:
    """Read-only snapshot: latest window + active session count."""
    window = await SqliteWindowRepository(db).latest()
    active_sessions = await SqliteSessionRepository(db).count(status="active")
    return compute_usage(
        plan,
        window,
        now=now or utc_now(),
        active_sessions=active_sessions,
        plan_limits=plan_limits,
    )


def available_tokens(usage: TokenUsage) -> AvailableTokens:
    return AvailableTokens(
        available_tokens=usage.available_tokens,
        plan=usage.plan,
        usage_limit=usage.usage_limit,
        used_tokens=usage.total_tokens,
    )
