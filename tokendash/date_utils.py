"""Shared timestamp normalization helpers.

Stored timestamps are UTC ISO strings with a fixed microsecond width and a
``Z`` suffix, so string comparison in SQL matches chronological order.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

_STORAGE_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def ensure_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 token (``Z`` or offset suffix) into an aware UTC datetime."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        return None
    token = value.strip()
    if not token:
        return None
    if token.endswith(("Z", "z")):
        token = token[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(token)
    except ValueError:
        pass
    else:
        return ensure_utc(parsed)
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%d %H:%M:%S"):
        try:
            parsed = datetime.strptime(token, fmt)
        except ValueError:
            continue
        return ensure_utc(parsed)
    return None


def to_storage(value: datetime) -> str:
    return ensure_utc(value).strftime(_STORAGE_FORMAT)


def from_storage(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, _STORAGE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return parse_timestamp(value)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
