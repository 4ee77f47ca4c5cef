"""Memory engine - composition root of one conversation session.

A session is identified by ``(memory_key, thread_id)``. The engine owns the
session's chat buffer and core memory store, renders core memory into the
leading system turn, and fronts the archive with ranked search.

Session lifecycle: ``uninitialized -> initializing -> ready``, then
``closed``. Every operation except :meth:`MemoryEngine.initialize`,
:meth:`MemoryEngine.export_state` and :meth:`MemoryEngine.close` fails fast
with :class:`NotReadyError` outside ``ready``; nothing queues behind a
pending initialization.

Chat and core memory mutations are serialized per session with an
``asyncio.Lock`` shared by every engine bound to the same session on the
same event loop. Distinct sessions never share a lock.
"""

from __future__ import annotations

import asyncio
import weakref
from datetime import datetime, timezone
from typing import Any, Iterable, Union

from loguru import logger

from .chat_buffer import ChatBuffer
from .config import MemoryConfig
from .core_memory import CoreMemoryStore
from .embedding import EmbeddingService
from .exceptions import EmbeddingFailureError, EntryNotFoundError, NotReadyError
from .interfaces import ChatLLM, Embedder, SearchBackend, StorageBackend, Summarize
from .models import (
    ArchiveEntry,
    CoreBlock,
    CoreMemorySnapshot,
    SearchMode,
    SearchOptions,
    SearchResult,
    SessionState,
    SessionStatus,
    Turn,
)
from .ranking import ArchiveRanker
from .storage import InMemoryStorage, SQLiteArchive, SQLiteStorage
from .summarizer import ConversationSummarizer
from .token_counter import TokenCounter

TurnInput = Union[Turn, dict[str, Any]]

_SESSION_LOCKS: "weakref.WeakValueDictionary[tuple, asyncio.Lock]" = (
    weakref.WeakValueDictionary()
)


def _session_lock(
    loop: asyncio.AbstractEventLoop, memory_key: str, thread_id: str
) -> asyncio.Lock:
    key = (loop, memory_key, thread_id)
    lock = _SESSION_LOCKS.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _SESSION_LOCKS[key] = lock
    return lock


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_turns(turns: TurnInput | Iterable[TurnInput]) -> list[Turn]:
    if isinstance(turns, (Turn, dict)):
        turns = [turns]
    return [t if isinstance(t, Turn) else Turn.model_validate(t) for t in turns]


class MemoryEngine:
    """Working memory of one conversational agent session.

    Provides:
    - Token-budgeted chat history with summarizing compaction
    - Budgeted core memory blocks rendered into the system turn
    - Archive insert/update/delete and lexical, vector or hybrid search
    - Session state export through the storage backend

    Chat history belongs to ``(memory_key, thread_id)`` while core memory is
    shared by every thread of a ``memory_key``. Each engine keeps its own
    core memory snapshot loaded at initialize and saves the whole snapshot on
    update, so two threads of the same key that update different blocks
    overwrite each other (last writer wins).
    """

    def __init__(
        self,
        storage: StorageBackend,
        archive: SearchBackend,
        summarizer: Summarize,
        memory_key: str,
        thread_id: str = "default",
        config: MemoryConfig | None = None,
        token_counter: TokenCounter | None = None,
    ):
        """Initialize the engine. Call :meth:`initialize` before use.

        Args:
            storage: Session state persistence
            archive: Archive storage and query execution
            summarizer: Async ``(turns, previous_summary) -> str``
            memory_key: Owner of the session; core memory is keyed by it
            thread_id: Conversation thread of the owner
            config: Engine configuration (defaults if not provided)
            token_counter: Token counter to use instead of an owned one
        """
        self.config = config or MemoryConfig()
        self.memory_key = memory_key
        self.thread_id = thread_id
        self._storage = storage
        self._archive = archive

        self._owns_token_counter = token_counter is None
        self._token_counter = token_counter or TokenCounter(
            model=self.config.tokenizer_model
        )
        self._max_context_size = self.config.max_context_size
        self._ranker = ArchiveRanker(self.config.retrieval)
        self._core = CoreMemoryStore(
            token_counter=self._token_counter,
            block_token_limit=self.config.core_block_token_limit,
            persist=self._save_core_memory,
        )
        self._buffer = ChatBuffer(
            token_limit=self.config.chat_token_limit,
            token_counter=self._token_counter,
            summarize=summarizer,
            persist=self._save_chat_buffer,
        )
        self._status = SessionStatus.UNINITIALIZED
        self._lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None
        self._resources: list[Any] = []

        logger.info(
            f"MemoryEngine created: session={memory_key}/{thread_id}, "
            f"chat_token_limit={self.config.chat_token_limit}, "
            f"core_block_token_limit={self.config.core_block_token_limit}"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self._status

    def _require_ready(self) -> None:
        if self._status != SessionStatus.READY:
            raise NotReadyError(self._status.value)

    def _session_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = _session_lock(loop, self.memory_key, self.thread_id)
            self._lock_loop = loop
        return self._lock

    async def initialize(self, previous_state: SessionState | None = None) -> None:
        """Load or adopt the session state and create missing core blocks.

        A non-empty stored (or supplied) chat history is adopted verbatim;
        otherwise a single system turn is rendered from core memory.

        Raises:
            NotReadyError: If initialization is already in progress or the
                engine has been closed
        """
        if self._status in (SessionStatus.INITIALIZING, SessionStatus.CLOSED):
            raise NotReadyError(self._status.value)

        self._status = SessionStatus.INITIALIZING
        try:
            async with self._session_lock():
                state = await self._storage.initialize_state(
                    self.memory_key, self.thread_id, previous_state
                )
                self._core.load(state.core_memory)
                created = await self._core.apply_defaults(self.config.core_blocks)

                if state.chat_history:
                    self._buffer.load(state.chat_history)
                    if created:
                        await self._buffer.set_system_text(self._core.render())
                else:
                    await self._buffer.reset(self._core.render())

                if len(self._core):
                    await self._save_core_memory(self._core.get())
        except BaseException:
            self._status = SessionStatus.UNINITIALIZED
            raise

        self._status = SessionStatus.READY
        logger.info(
            f"Session {self.memory_key}/{self.thread_id} ready: "
            f"{len(self._buffer)} turns, {len(self._core)} core blocks"
        )

    async def close(self) -> None:
        """Release the token counter and any backends created for the engine."""
        if self._status == SessionStatus.CLOSED:
            return
        self._status = SessionStatus.CLOSED
        if self._owns_token_counter:
            self._token_counter.close()
        for resource in self._resources:
            await resource.close()
        self._resources.clear()
        logger.info(f"Session {self.memory_key}/{self.thread_id} closed")

    async def __aenter__(self) -> "MemoryEngine":
        if self._status == SessionStatus.UNINITIALIZED:
            await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Persistence callbacks
    # ------------------------------------------------------------------

    async def _save_chat_buffer(self, turns: list[Turn]) -> None:
        await self._storage.save_chat_buffer(self.memory_key, self.thread_id, turns)

    async def _save_core_memory(self, snapshot: CoreMemorySnapshot) -> None:
        await self._storage.save_core_memory(self.memory_key, snapshot)

    async def export_state(self) -> SessionState:
        """Return the persisted state of this session."""
        return await self._storage.export_state(self.memory_key, self.thread_id)

    # ------------------------------------------------------------------
    # Chat history
    # ------------------------------------------------------------------

    async def add_turns(self, turns: TurnInput | Iterable[TurnInput]) -> None:
        """Append one or many turns, compacting the history if over budget."""
        self._require_ready()
        new_turns = _to_turns(turns)
        if not new_turns:
            return
        async with self._session_lock():
            await self._buffer.append(new_turns)

    async def get_chat_history(self) -> list[Turn]:
        self._require_ready()
        return self._buffer.turns

    @property
    def context_size(self) -> int:
        """Current chat history size in tokens."""
        return self._buffer.total_tokens()

    @property
    def chat_token_limit(self) -> int:
        return self._buffer.token_limit

    async def set_chat_token_limit(self, limit: int) -> None:
        """Change the chat budget, compacting immediately if needed."""
        self._require_ready()
        async with self._session_lock():
            await self._buffer.set_token_limit(limit)

    @property
    def max_context_size(self) -> int:
        return self._max_context_size

    @max_context_size.setter
    def max_context_size(self, size: int) -> None:
        self._max_context_size = size

    # ------------------------------------------------------------------
    # Core memory
    # ------------------------------------------------------------------

    @property
    def core_block_token_limit(self) -> int:
        return self._core.block_token_limit

    @core_block_token_limit.setter
    def core_block_token_limit(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError(f"core_block_token_limit must be positive, got {limit}")
        self._core.block_token_limit = limit

    async def get_core_memory(self) -> CoreMemorySnapshot:
        self._require_ready()
        return self._core.get()

    async def update_core_block(
        self, key: str, content: str, description: str | None = None
    ) -> CoreBlock:
        """Replace a core block's content and re-render the system turn.

        Raises:
            BudgetExceededError: If content exceeds the block token limit
        """
        self._require_ready()
        async with self._session_lock():
            block = await self._core.update(key, content, description)
            await self._buffer.set_system_text(self._core.render())
        return block

    async def append_core_block(self, key: str, content: str) -> CoreBlock:
        """Append a line to a core block (creating it if missing)."""
        self._require_ready()
        async with self._session_lock():
            existing = self._core.get().get(key)
            new_content = (
                f"{existing.content}\n{content}" if existing and existing.content else content
            )
            block = await self._core.update(key, new_content)
            await self._buffer.set_system_text(self._core.render())
        return block

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    async def _embed(self, text: str) -> list[float]:
        try:
            return await self._archive.embed(text)
        except EmbeddingFailureError:
            raise
        except Exception as e:
            raise EmbeddingFailureError(f"Embedding failed: {e}") from e

    async def _embed_for_storage(self, text: str) -> list[float] | None:
        if not self._archive.can_embed:
            return None
        return await self._embed(text)

    def _default_search_options(self) -> SearchOptions:
        retrieval = self.config.retrieval
        return SearchOptions(
            mode=retrieval.mode,
            limit=retrieval.limit,
            vector_weight=retrieval.vector_weight,
            text_weight=retrieval.text_weight,
            min_score=retrieval.min_score,
        )

    async def search_archive(
        self, query: str, options: SearchOptions | None = None
    ) -> list[SearchResult]:
        """Search the archive and return ranked results.

        Lexical search never calls the embedder. Vector and hybrid search
        raise :class:`EmbeddingFailureError` if the query cannot be embedded.
        """
        self._require_ready()
        options = options or self._default_search_options()

        if options.mode == SearchMode.LEXICAL:
            lexical_hits = await self._archive.search_lexical(
                query, options.limit, options.offset
            )
            results = self._ranker.rank_lexical(
                query, lexical_hits, limit=options.limit, min_score=options.min_score
            )
        elif options.mode == SearchMode.VECTOR:
            embedding = await self._embed(query)
            vector_hits = await self._archive.search_vector(
                embedding, options.limit, options.offset
            )
            results = self._ranker.rank_vector(
                vector_hits, limit=options.limit, min_score=options.min_score
            )
        else:
            embedding = await self._embed(query)
            vector_hits = await self._archive.search_vector(
                embedding, options.limit, options.offset
            )
            lexical_hits = await self._archive.search_lexical(
                query, options.limit, options.offset
            )
            results = self._ranker.rank_hybrid(
                query,
                vector_hits,
                lexical_hits,
                vector_weight=options.vector_weight,
                text_weight=options.text_weight,
                limit=options.limit,
                min_score=options.min_score,
            )

        logger.debug(
            f"Archive search ({options.mode.value}) for {query!r}: "
            f"{len(results)} results"
        )
        return results

    async def insert_archive_entry(
        self, name: str, content: str, metadata: dict[str, Any] | None = None
    ) -> ArchiveEntry:
        self._require_ready()
        embedding = await self._embed_for_storage(content)
        entry = ArchiveEntry(
            name=name, content=content, metadata=metadata, embedding=embedding
        )
        stored = await self._archive.add_entry(entry)
        logger.debug(f"Archived entry {stored.id} ({name!r})")
        return stored

    async def update_archive_entry(
        self,
        entry_id: str,
        *,
        name: str | None = None,
        content: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ArchiveEntry:
        """Partially update an entry.

        The embedding is regenerated only when the content changes. Without
        an embedder the entry keeps no embedding.

        Raises:
            EntryNotFoundError: If no entry has this id
        """
        self._require_ready()
        existing = await self._archive.get_entry(entry_id)
        if existing is None:
            raise EntryNotFoundError(entry_id)

        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = name
        if metadata is not None:
            changes["metadata"] = metadata
        if content is not None:
            changes["content"] = content
            if content != existing.content:
                changes["embedding"] = await self._embed_for_storage(content)
        changes["timestamp"] = max(_utcnow(), existing.timestamp)

        return await self._archive.update_entry(entry_id, changes)

    async def delete_archive_entry(self, entry_id: str) -> ArchiveEntry | None:
        """Delete an entry, returning it, or None if it did not exist."""
        self._require_ready()
        entry = await self._archive.get_entry(entry_id)
        if entry is None:
            return None
        await self._archive.delete_entry(entry_id)
        return entry


async def create_engine(
    llm: ChatLLM,
    memory_key: str,
    thread_id: str = "default",
    config: MemoryConfig | None = None,
    embedder: Embedder | None = None,
    previous_state: SessionState | None = None,
    token_counter: TokenCounter | None = None,
) -> MemoryEngine:
    """Build backends from ``config`` and return an initialized engine.

    Backends created here are closed together with the engine.
    """
    config = config or MemoryConfig()

    if config.storage.backend == "sqlite":
        db_path = config.storage.sqlite_db_path
        storage: StorageBackend = SQLiteStorage(db_path=db_path)
        await storage.initialize()
    else:
        db_path = ":memory:"
        storage = InMemoryStorage()

    archive = SQLiteArchive(
        db_path=db_path,
        embedder=embedder or EmbeddingService(config.embedding),
    )
    await archive.initialize()

    engine = MemoryEngine(
        storage=storage,
        archive=archive,
        summarizer=ConversationSummarizer(llm),
        memory_key=memory_key,
        thread_id=thread_id,
        config=config,
        token_counter=token_counter,
    )
    engine._resources.extend(
        r for r in (storage, archive) if hasattr(r, "close")
    )
    await engine.initialize(previous_state)
    return engine
