"""Dictionary-backed session state storage."""

from __future__ import annotations

from typing import Sequence

from loguru import logger

from ..exceptions import StateNotFoundError
from ..models import CoreMemorySnapshot, SessionState, Turn


def _copy_snapshot(snapshot: CoreMemorySnapshot | None) -> CoreMemorySnapshot | None:
    if snapshot is None:
        return None
    return {key: block.model_copy(deep=True) for key, block in snapshot.items()}


class InMemoryStorage:
    """Process-local :class:`~recall_memory.interfaces.StorageBackend`.

    Values are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self) -> None:
        self._chat_history: dict[tuple[str, str], list[Turn]] = {}
        self._core_memory: dict[str, CoreMemorySnapshot | None] = {}

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
        chat_key = (memory_key, thread_id)
        if chat_key not in self._chat_history and memory_key not in self._core_memory:
            return None
        return SessionState(
            chat_history=[
                turn.model_copy(deep=True)
                for turn in self._chat_history.get(chat_key, [])
            ],
            core_memory=_copy_snapshot(self._core_memory.get(memory_key)),
        )

    async def save_chat_buffer(
        self, memory_key: str, thread_id: str, turns: Sequence[Turn]
    ) -> None:
        self._chat_history[(memory_key, thread_id)] = [
            turn.model_copy(deep=True) for turn in turns
        ]

    async def save_core_memory(
        self, memory_key: str, snapshot: CoreMemorySnapshot | None
    ) -> None:
        self._core_memory[memory_key] = _copy_snapshot(snapshot)

    async def delete_state(self, memory_key: str) -> None:
        for chat_key in [k for k in self._chat_history if k[0] == memory_key]:
            del self._chat_history[chat_key]
        self._core_memory.pop(memory_key, None)
        logger.debug(f"Deleted memory state for {memory_key}")

    async def export_state(self, memory_key: str, thread_id: str) -> SessionState:
        state = await self.load_state(memory_key, thread_id)
        if state is None:
            raise StateNotFoundError(memory_key, thread_id)
        return state

    async def flush_all(self) -> None:
        self._chat_history.clear()
        self._core_memory.clear()
