"""SQLite archive backend with FTS5 lexical search and vector search.

Entries live in ``archive_entries``; an FTS5 mirror over ``name`` and
``content`` is kept in sync by triggers. Embeddings are stored as float32
BLOBs and compared by cosine distance in numpy.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence
from uuid import uuid4

import aiosqlite
import numpy as np
from loguru import logger

from ..embedding import EmbeddingService
from ..exceptions import BackendUnavailableError, EmbeddingFailureError, EntryNotFoundError
from ..interfaces import Embedder
from ..models import ArchiveEntry, LexicalHit, VectorHit
from .sqlite_store import translate_errors

_COLUMNS = "entry_id, name, content, metadata, timestamp, embedding"
_JOINED_COLUMNS = "e.entry_id, e.name, e.content, e.metadata, e.timestamp, e.embedding"
_UPDATABLE_FIELDS = {"name", "content", "metadata", "embedding", "timestamp"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLiteArchive:
    """aiosqlite-backed :class:`~recall_memory.interfaces.SearchBackend`."""

    def __init__(
        self,
        db_path: str = "./memory/recall.db",
        embedder: Embedder | None = None,
    ):
        """Initialize the archive.

        Args:
            db_path: Path to the SQLite database file
            embedder: Object with ``encode_single(text)``; required for
                embedding and vector search
        """
        self.db_path = db_path
        self._embedder = embedder
        self._db: aiosqlite.Connection | None = None
        logger.info(f"SQLiteArchive initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create tables, the FTS5 mirror and its triggers."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with translate_errors("archive initialize"):
            self._db = await aiosqlite.connect(self.db_path)
            await self._db.execute("PRAGMA journal_mode=WAL")

            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS archive_entries (
                    entry_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    content TEXT NOT NULL,
                    metadata TEXT,
                    timestamp TEXT NOT NULL,
                    embedding BLOB
                )
            """)

            await self._db.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS archive_entries_fts
                USING fts5(name, content, content=archive_entries, content_rowid=rowid)
            """)

            await self._db.execute("""
                CREATE TRIGGER IF NOT EXISTS archive_entries_ai AFTER INSERT ON archive_entries BEGIN
                    INSERT INTO archive_entries_fts(rowid, name, content)
                    VALUES (new.rowid, new.name, new.content);
                END
            """)

            await self._db.execute("""
                CREATE TRIGGER IF NOT EXISTS archive_entries_ad AFTER DELETE ON archive_entries BEGIN
                    INSERT INTO archive_entries_fts(archive_entries_fts, rowid, name, content)
                    VALUES ('delete', old.rowid, old.name, old.content);
                END
            """)

            await self._db.execute("""
                CREATE TRIGGER IF NOT EXISTS archive_entries_au AFTER UPDATE ON archive_entries BEGIN
                    INSERT INTO archive_entries_fts(archive_entries_fts, rowid, name, content)
                    VALUES ('delete', old.rowid, old.name, old.content);
                    INSERT INTO archive_entries_fts(rowid, name, content)
                    VALUES (new.rowid, new.name, new.content);
                END
            """)

            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_archive_timestamp "
                "ON archive_entries(timestamp)"
            )
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_archive_name ON archive_entries(name)"
            )
            await self._db.commit()
        logger.info("SQLite archive initialized")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite archive closed")

    def _require_db(self) -> aiosqlite.Connection:
        if not self._db:
            raise BackendUnavailableError(
                "Database not initialized. Call initialize() first."
            )
        return self._db

    @staticmethod
    def _row_to_entry(row: Sequence[Any], with_embedding: bool = True) -> ArchiveEntry:
        entry_id, name, content, metadata, timestamp, blob = row
        return ArchiveEntry(
            id=entry_id,
            name=name,
            content=content,
            metadata=json.loads(metadata) if metadata else None,
            timestamp=datetime.fromisoformat(timestamp),
            embedding=(
                EmbeddingService.deserialize_embedding(blob)
                if with_embedding and blob
                else None
            ),
        )

    @staticmethod
    def _entry_params(entry: ArchiveEntry) -> tuple:
        return (
            entry.name,
            entry.content,
            json.dumps(entry.metadata) if entry.metadata is not None else None,
            entry.timestamp.isoformat(),
            EmbeddingService.serialize_embedding(entry.embedding)
            if entry.embedding
            else None,
        )

    @property
    def can_embed(self) -> bool:
        return self._embedder is not None

    async def embed(self, text: str) -> list[float]:
        """Embed text with the configured embedder in a worker thread."""
        if self._embedder is None:
            raise EmbeddingFailureError("No embedder configured for the archive")
        try:
            vector = await asyncio.to_thread(self._embedder.encode_single, text)
        except EmbeddingFailureError:
            raise
        except Exception as e:
            raise EmbeddingFailureError(f"Embedding failed: {e}") from e
        if not vector:
            raise EmbeddingFailureError("Embedder returned an empty vector")
        return list(vector)

    async def add_entry(self, entry: ArchiveEntry) -> ArchiveEntry:
        """Store an entry, generating its id, timestamp and missing embedding.

        Without an embedder the entry is stored with no embedding and is only
        reachable through lexical search.
        """
        db = self._require_db()
        embedding = entry.embedding
        if not embedding and self.can_embed:
            embedding = await self.embed(entry.content)
        stored = entry.model_copy(
            update={
                "id": entry.id or str(uuid4()),
                "timestamp": _utcnow(),
                "embedding": embedding or None,
            }
        )
        async with translate_errors("add_entry"):
            await db.execute(
                f"INSERT INTO archive_entries ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                (stored.id, *self._entry_params(stored)),
            )
            await db.commit()
        logger.debug(f"Archive entry added: {stored.id}")
        return stored

    async def add_entries(self, entries: Sequence[ArchiveEntry]) -> list[ArchiveEntry]:
        return [await self.add_entry(entry) for entry in entries]

    async def get_entry(self, entry_id: str) -> ArchiveEntry | None:
        db = self._require_db()
        async with translate_errors("get_entry"):
            async with db.execute(
                f"SELECT {_COLUMNS} FROM archive_entries WHERE entry_id = ?",
                (entry_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_entry(row) if row else None

    async def update_entry(
        self, entry_id: str, changes: dict[str, Any]
    ) -> ArchiveEntry:
        """Apply a partial update.

        A content change without an explicit embedding re-embeds the entry,
        or drops the stale embedding when no embedder is configured.

        Raises:
            EntryNotFoundError: If no entry has this id
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update archive fields: {sorted(unknown)}")

        existing = await self.get_entry(entry_id)
        if existing is None:
            raise EntryNotFoundError(entry_id)

        changes = dict(changes)
        if (
            "content" in changes
            and changes["content"] != existing.content
            and "embedding" not in changes
        ):
            changes["embedding"] = (
                await self.embed(changes["content"]) if self.can_embed else None
            )
        updated = existing.model_copy(update=changes)

        db = self._require_db()
        async with translate_errors("update_entry"):
            await db.execute(
                """
                UPDATE archive_entries
                SET name = ?, content = ?, metadata = ?, timestamp = ?, embedding = ?
                WHERE entry_id = ?
                """,
                (*self._entry_params(updated), entry_id),
            )
            await db.commit()
        logger.debug(f"Archive entry updated: {entry_id} (fields={sorted(changes)})")
        return updated

    async def delete_entry(self, entry_id: str) -> None:
        db = self._require_db()
        async with translate_errors("delete_entry"):
            await db.execute(
                "DELETE FROM archive_entries WHERE entry_id = ?", (entry_id,)
            )
            await db.commit()
        logger.debug(f"Archive entry deleted: {entry_id}")

    async def delete_entries_by_name(self, name: str) -> int:
        db = self._require_db()
        async with translate_errors("delete_entries_by_name"):
            cursor = await db.execute(
                "DELETE FROM archive_entries WHERE name = ?", (name,)
            )
            count = cursor.rowcount
            await cursor.close()
            await db.commit()
        logger.debug(f"Deleted {count} archive entries named {name!r}")
        return count

    async def list_entries(self, limit: int = 100, offset: int = 0) -> list[ArchiveEntry]:
        """List entries, newest first."""
        db = self._require_db()
        async with translate_errors("list_entries"):
            async with db.execute(
                f"SELECT {_COLUMNS} FROM archive_entries "
                "ORDER BY timestamp DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def clear(self) -> None:
        db = self._require_db()
        async with translate_errors("clear"):
            await db.execute("DELETE FROM archive_entries")
            await db.commit()
        logger.info("Archive cleared")

    async def count(self) -> int:
        db = self._require_db()
        async with translate_errors("count"):
            async with db.execute("SELECT COUNT(*) FROM archive_entries") as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0

    async def search_lexical(
        self, query: str, limit: int = 20, offset: int = 0
    ) -> list[LexicalHit]:
        """Full-text search over name and content, best FTS5 rank first."""
        fts_query = self._sanitize_fts_query(query)
        if not fts_query:
            return []

        db = self._require_db()
        async with translate_errors("search_lexical"):
            async with db.execute(
                f"""
                SELECT {_JOINED_COLUMNS}
                FROM archive_entries_fts
                JOIN archive_entries e ON e.rowid = archive_entries_fts.rowid
                WHERE archive_entries_fts MATCH ?
                ORDER BY archive_entries_fts.rank
                LIMIT ? OFFSET ?
                """,
                (fts_query, limit, offset),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            LexicalHit(entry=self._row_to_entry(row, with_embedding=False))
            for row in rows
        ]

    async def search_vector(
        self, embedding: Sequence[float], limit: int = 20, offset: int = 0
    ) -> list[VectorHit]:
        """Nearest entries by cosine distance (``1 - cosine similarity``)."""
        query = np.asarray(embedding, dtype=np.float32)
        query_norm = float(np.linalg.norm(query))
        if query.size == 0 or query_norm == 0.0:
            return []

        db = self._require_db()
        async with translate_errors("search_vector"):
            async with db.execute(
                f"SELECT {_COLUMNS} FROM archive_entries WHERE embedding IS NOT NULL"
            ) as cursor:
                rows = await cursor.fetchall()

        entries: list[ArchiveEntry] = []
        vectors: list[np.ndarray] = []
        for row in rows:
            vector = np.frombuffer(row[5], dtype="<f4")
            if vector.shape != query.shape:
                continue
            entries.append(self._row_to_entry(row, with_embedding=False))
            vectors.append(vector)

        if not vectors:
            return []

        matrix = np.vstack(vectors)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0.0] = np.inf
        similarities = (matrix @ query) / (norms * query_norm)
        distances = 1.0 - similarities

        order = np.argsort(distances, kind="stable")[offset:offset + limit]
        return [
            VectorHit(entry=entries[i], distance=float(distances[i]))
            for i in order
        ]

    @staticmethod
    def _sanitize_fts_query(query: str) -> str:
        """Quote each word and join with OR so FTS5 syntax cannot leak in."""
        words = [
            w.replace('"', '""')
            for w in query.split()
            if any(ch.isalnum() for ch in w)
        ]
        return " OR ".join(f'"{w}"' for w in words)
