"""Repository package for database access."""

from .sessions import SqliteSessionRepository
from .messages import SqliteMessageRepository
from .windows import SqliteWindowRepository
from .sync_state import SqliteSyncStateRepository

__all__ = [
    "SqliteSessionRepository",
    "SqliteMessageRepository",
    "SqliteWindowRepository",
    "SqliteSyncStateRepository",
]
