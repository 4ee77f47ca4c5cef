"""SQLite storage backend for session state.

Chat history lives in ``chat_history`` keyed by ``(memory_key, thread_id)``;
core memory lives in ``core_memory`` keyed by ``memory_key`` alone, so all
threads of one memory key share their core blocks.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence

import aiosqlite
from loguru import logger
from pydantic import TypeAdapter

from ..exceptions import BackendUnavailableError, StateNotFoundError
from ..models import CoreBlock, CoreMemorySnapshot, SessionState, Turn

_TURNS = TypeAdapter(list[Turn])
_SNAPSHOT = TypeAdapter(Optional[dict[str, CoreBlock]])


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def translate_errors(operation: str) -> AsyncIterator[None]:
    """Re-raise SQLite failures as :class:`BackendUnavailableError`."""
    try:
        yield
    except aiosqlite.Error as e:
        logger.error(f"SQLite {operation} failed: {e}")
        raise BackendUnavailableError(f"SQLite {operation} failed: {e}") from e


class SQLiteStorage:
    """aiosqlite-backed :class:`~recall_memory.interfaces.StorageBackend`.

    Uses WAL mode for concurrent reads. Call :meth:`initialize` before use
    and :meth:`close` when done.
    """

    def __init__(self, db_path: str = "./memory/recall.db"):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        logger.info(f"SQLiteStorage initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create the database file, tables and pragmas."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with translate_errors("initialize"):
            self._db = await aiosqlite.connect(self.db_path)
            await self._db.execute("PRAGMA journal_mode=WAL")

            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS chat_history (
                    memory_key TEXT NOT NULL,
                    thread_id TEXT NOT NULL,
                    turns TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (memory_key, thread_id)
                )
            """)

            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS core_memory (
                    memory_key TEXT PRIMARY KEY,
                    snapshot TEXT,
                    updated_at TEXT NOT NULL
                )
            """)

            await self._db.commit()
        logger.info("SQLite session storage initialized")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite session storage closed")

    def _require_db(self) -> aiosqlite.Connection:
        if not self._db:
            raise BackendUnavailableError(
                "Database not initialized. Call initialize() first."
            )
        return self._db

    async def initialize_state(
        self,
        memory_key: str,
        thread_id: str,
        previous: SessionState | None = None,
    ) -> SessionState:
        if previous is not None:
            await self.save_chat_buffer(memory_key, thread_id, previous.chat_history)
            await self.save_core_memory(memory_key, previous.core_memory)
            logger.debug(f"Adopted previous state for {memory_key}/{thread_id}")
            return previous.model_copy(deep=True)

        existing = await self.load_state(memory_key, thread_id)
        if existing is not None:
            return existing

        state = SessionState()
        await self.save_chat_buffer(memory_key, thread_id, state.chat_history)
        await self.save_core_memory(memory_key, state.core_memory)
        return state

    async def load_state(
        self, memory_key: str, thread_id: str
    ) -> SessionState | None:
        db = self._require_db()
        async with translate_errors("load_state"):
            async with db.execute(
                "SELECT turns FROM chat_history WHERE memory_key = ? AND thread_id = ?",
                (memory_key, thread_id),
            ) as cursor:
                chat_row = await cursor.fetchone()
            async with db.execute(
                "SELECT snapshot FROM core_memory WHERE memory_key = ?",
                (memory_key,),
            ) as cursor:
                core_row = await cursor.fetchone()

        if chat_row is None and core_row is None:
            return None

        turns = _TURNS.validate_json(chat_row[0]) if chat_row else []
        snapshot = (
            _SNAPSHOT.validate_json(core_row[0])
            if core_row and core_row[0] is not None
            else None
        )
        return SessionState(chat_history=turns, core_memory=snapshot)

    async def save_chat_buffer(
        self, memory_key: str, thread_id: str, turns: Sequence[Turn]
    ) -> None:
        db = self._require_db()
        payload = _TURNS.dump_json(list(turns)).decode("utf-8")
        async with translate_errors("save_chat_buffer"):
            await db.execute(
                """
                INSERT INTO chat_history (memory_key, thread_id, turns, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(memory_key, thread_id) DO UPDATE SET
                    turns = excluded.turns,
                    updated_at = excluded.updated_at
                """,
                (memory_key, thread_id, payload, _utcnow_iso()),
            )
            await db.commit()
        logger.debug(f"Chat history saved: {memory_key}/{thread_id} ({len(turns)} turns)")

    async def save_core_memory(
        self, memory_key: str, snapshot: CoreMemorySnapshot | None
    ) -> None:
        db = self._require_db()
        payload = (
            _SNAPSHOT.dump_json(snapshot).decode("utf-8")
            if snapshot is not None
            else None
        )
        async with translate_errors("save_core_memory"):
            await db.execute(
                """
                INSERT INTO core_memory (memory_key, snapshot, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(memory_key) DO UPDATE SET
                    snapshot = excluded.snapshot,
                    updated_at = excluded.updated_at
                """,
                (memory_key, payload, _utcnow_iso()),
            )
            await db.commit()
        logger.debug(f"Core memory saved: {memory_key}")

    async def delete_state(self, memory_key: str) -> None:
        """Delete core memory and every chat thread of ``memory_key``."""
        db = self._require_db()
        async with translate_errors("delete_state"):
            await db.execute(
                "DELETE FROM chat_history WHERE memory_key = ?", (memory_key,)
            )
            await db.execute(
                "DELETE FROM core_memory WHERE memory_key = ?", (memory_key,)
            )
            await db.commit()
        logger.debug(f"Deleted memory state for {memory_key}")

    async def export_state(self, memory_key: str, thread_id: str) -> SessionState:
        state = await self.load_state(memory_key, thread_id)
        if state is None:
            raise StateNotFoundError(memory_key, thread_id)
        return state

    async def flush_all(self) -> None:
        db = self._require_db()
        async with translate_errors("flush_all"):
            await db.execute("DELETE FROM chat_history")
            await db.execute("DELETE FROM core_memory")
            await db.commit()
        logger.info("Flushed all session state")
