"""Project identity resolution for transcript records.

Pure functions only: they run once per ingested record and must give the
same answer for the same input.
"""
from __future__ import annotations

import posixpath

GENERIC_SUBDIRS = frozenset({"frontend", "backend", "src", "lib"})
UNKNOWN_PROJECT = "unknown"


def path_segments(path: str) -> list[str]:
    cleaned = posixpath.normpath(path.replace("\\", "/"))
    return [part for part in cleaned.split("/") if part not in ("", ".", "..")]


def project_name_from_segments(
    segments: list[str],
    generic: frozenset[str] = GENERIC_SUBDIRS,
) -> str:
    """Pick a project name from ordered path segments (root first).

    The deepest non-generic segment wins. When the deepest segment is a
    generic subdirectory, its nearest non-generic ancestor is used instead;
    a path made only of generic segments falls back to the deepest one.
    """
    if not segments:
        return UNKNOWN_PROJECT
    for segment in reversed(segments):
        if segment not in generic:
            return segment
    return segments[-1]


def decode_project_dir(dir_name: str) -> str:
    """Reverse the ``-home-u-proj`` directory encoding into ``/home/u/proj``."""
    if dir_name.startswith("-"):
        return "/" + dir_name[1:].replace("-", "/")
    return dir_name


def resolve_project(cwd: str | None, log_dir_name: str) -> tuple[str, str]:
    """Return ``(project_name, project_path)`` for a record.

    An explicit working directory is authoritative; otherwise the enclosing
    log directory name is decoded.
    """
    if cwd and cwd.strip():
        return project_name_from_segments(path_segments(cwd)), cwd
    return log_dir_name, decode_project_dir(log_dir_name)
