"""Storage backends for session state and archival memory."""

from __future__ import annotations

from .memory_store import InMemoryStorage
from .sqlite_archive import SQLiteArchive
from .sqlite_store import SQLiteStorage

__all__ = ["InMemoryStorage", "SQLiteArchive", "SQLiteStorage"]
