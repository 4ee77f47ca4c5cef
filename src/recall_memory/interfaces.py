"""Collaborator interfaces consumed by the memory engine.

Protocols rather than base classes: any object implementing the method set
is accepted.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Protocol, Sequence, runtime_checkable

from .models import (
    ArchiveEntry,
    CoreMemorySnapshot,
    LexicalHit,
    SessionState,
    Turn,
    VectorHit,
)


@runtime_checkable
class StorageBackend(Protocol):
    """Session state persistence.

    Chat history is keyed by ``(memory_key, thread_id)``; core memory by
    ``memory_key`` alone and shared across threads.
    """

    async def initialize_state(
        self,
        memory_key: str,
        thread_id: str,
        previous: SessionState | None = None,
    ) -> SessionState:
        """Return the stored state, creating it (or adopting ``previous``)."""
        ...

    async def load_state(
        self, memory_key: str, thread_id: str
    ) -> SessionState | None:
        ...

    async def save_chat_buffer(
        self, memory_key: str, thread_id: str, turns: Sequence[Turn]
    ) -> None:
        ...

    async def save_core_memory(
        self, memory_key: str, snapshot: CoreMemorySnapshot | None
    ) -> None:
        ...

    async def delete_state(self, memory_key: str) -> None:
        ...

    async def export_state(self, memory_key: str, thread_id: str) -> SessionState:
        ...

    async def flush_all(self) -> None:
        ...


@runtime_checkable
class SearchBackend(Protocol):
    """Archive storage with lexical and vector query execution."""

    async def add_entry(self, entry: ArchiveEntry) -> ArchiveEntry:
        ...

    async def add_entries(self, entries: Sequence[ArchiveEntry]) -> list[ArchiveEntry]:
        ...

    async def update_entry(
        self, entry_id: str, changes: dict[str, Any]
    ) -> ArchiveEntry:
        ...

    async def delete_entry(self, entry_id: str) -> None:
        ...

    async def delete_entries_by_name(self, name: str) -> int:
        ...

    async def get_entry(self, entry_id: str) -> ArchiveEntry | None:
        ...

    async def list_entries(
        self, limit: int = 100, offset: int = 0
    ) -> list[ArchiveEntry]:
        ...

    async def clear(self) -> None:
        ...

    async def count(self) -> int:
        ...

    async def search_lexical(
        self, query: str, limit: int = 20, offset: int = 0
    ) -> list[LexicalHit]:
        ...

    async def search_vector(
        self, embedding: Sequence[float], limit: int = 20, offset: int = 0
    ) -> list[VectorHit]:
        """Return hits ordered by ascending distance.

        Distances only need to be comparable within one response.
        """
        ...

    @property
    def can_embed(self) -> bool:
        """Whether an embedder is configured; entries are stored without
        embeddings otherwise."""
        ...

    async def embed(self, text: str) -> list[float]:
        ...


class ChatLLM(Protocol):
    """Streaming chat completion endpoint."""

    def chat_completion(
        self,
        messages: list[dict[str, Any]],
        system: str | None = None,
    ) -> AsyncIterator[Any]:
        """Yield ``str`` chunks or ``{"type": "text_delta", "text": ...}`` dicts."""
        ...


class Embedder(Protocol):
    def encode_single(self, text: str) -> list[float]:
        ...


class Summarize(Protocol):
    async def __call__(
        self, turns: list[Turn], previous_summary: str | None = None
    ) -> str:
        ...
