"""Decode JSONL transcript lines into LogEntry records."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterator, NamedTuple

from pydantic import ValidationError

from tokendash.models import LogEntry


class LogParseError(ValueError):
    """A single line could not be turned into a LogEntry."""

    def __init__(self, reason: str, line: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.snippet = line[:200]


class LogLine(NamedTuple):
    line_number: int
    end_offset: int  # byte offset just past this line
    text: str
    complete: bool  # False for a trailing line with no newline yet


def flatten_content(content: Any) -> str | None:
    """Flatten the polymorphic message content into storable text.

    Strings are kept verbatim; objects and arrays are serialized to a
    canonical JSON string (sorted keys, compact separators) so the same
    payload always yields the same text.
    """
    if content is None:
        return None
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def parse_log_line(line: str) -> LogEntry:
    """Parse one raw JSONL line. Raises LogParseError on any defect."""
    text = line.strip()
    if not text:
        raise LogParseError("blank line", line)
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LogParseError(f"invalid JSON: {exc.msg} (col {exc.colno})", text) from exc
    if not isinstance(payload, dict):
        raise LogParseError(f"expected a JSON object, got {type(payload).__name__}", text)
    try:
        return LogEntry.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(
            ".".join(str(part) for part in err.get("loc", ())) or "<root>"
            for err in exc.errors()
        )
        raise LogParseError(f"invalid record ({fields})", text) from exc


def iter_log_lines(path: Path, start_offset: int = 0) -> Iterator[LogLine]:
    """Yield non-blank lines of ``path`` starting at byte ``start_offset``.

    Reads one line at a time in binary mode with no length cap, so very large
    single-line payloads come through whole. Line numbers are relative to the
    starting offset.
    """
    offset = start_offset
    line_number = 0
    with path.open("rb") as handle:
        if start_offset:
            handle.seek(start_offset)
        for raw in handle:
            offset += len(raw)
            line_number += 1
            complete = raw.endswith(b"\n")
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            yield LogLine(line_number, offset, text, complete)
