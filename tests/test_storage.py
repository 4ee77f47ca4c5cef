"""Tests for the session state storage backends."""

from __future__ import annotations

import pytest

from recall_memory.exceptions import BackendUnavailableError, StateNotFoundError
from recall_memory.models import (
    CoreBlock,
    Role,
    SessionState,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    Turn,
)
from recall_memory.storage import InMemoryStorage, SQLiteStorage


@pytest.fixture(params=["memory", "sqlite"])
async def storage(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStorage()
        return
    backend = SQLiteStorage(db_path=str(tmp_path / "state.db"))
    await backend.initialize()
    yield backend
    await backend.close()


def sample_turns() -> list[Turn]:
    return [
        Turn.system("sys"),
        Turn.summary("earlier talk"),
        Turn.user("what's the weather?"),
        Turn(
            role=Role.ASSISTANT,
            content=[
                TextPart(text="checking"),
                ToolCallPart(tool_call_id="c1", tool_name="weather", args={"city": "Seoul"}),
            ],
        ),
        Turn(
            role=Role.TOOL,
            content=[
                ToolResultPart(
                    tool_call_id="c1", tool_name="weather", result={"temp": 21}
                )
            ],
        ),
    ]


def sample_core() -> dict[str, CoreBlock]:
    return {
        "zeta": CoreBlock(key="zeta", description="Z", content="last"),
        "alpha": CoreBlock(key="alpha", description="A", content="first", read_only=True),
    }


@pytest.mark.asyncio
async def test_load_missing_state_returns_none(storage):
    assert await storage.load_state("nobody", "default") is None


@pytest.mark.asyncio
async def test_initialize_state_creates_empty_state(storage):
    state = await storage.initialize_state("k", "t")
    assert state == SessionState()
    assert await storage.load_state("k", "t") == SessionState()


@pytest.mark.asyncio
async def test_initialize_state_returns_existing(storage):
    await storage.save_chat_buffer("k", "t", [Turn.system("sys")])
    state = await storage.initialize_state("k", "t")
    assert state.chat_history == [Turn.system("sys")]


@pytest.mark.asyncio
async def test_initialize_state_adopts_previous(storage):
    await storage.save_chat_buffer("k", "t", [Turn.system("stale")])
    previous = SessionState(chat_history=sample_turns(), core_memory=sample_core())

    state = await storage.initialize_state("k", "t", previous)

    assert state == previous
    assert await storage.load_state("k", "t") == previous


@pytest.mark.asyncio
async def test_round_trip_preserves_turns_and_block_order(storage):
    await storage.save_chat_buffer("k", "t", sample_turns())
    await storage.save_core_memory("k", sample_core())

    state = await storage.export_state("k", "t")

    assert state.chat_history == sample_turns()
    assert state.chat_history[1].is_summary
    assert list(state.core_memory) == ["zeta", "alpha"]
    assert state.core_memory == sample_core()


@pytest.mark.asyncio
async def test_core_memory_is_shared_across_threads(storage):
    await storage.save_chat_buffer("k", "t1", [Turn.user("one")])
    await storage.save_core_memory("k", sample_core())

    other = await storage.load_state("k", "t2")

    assert other.chat_history == []
    assert other.core_memory == sample_core()


@pytest.mark.asyncio
async def test_delete_state_removes_every_thread(storage):
    await storage.save_chat_buffer("k", "t1", [Turn.user("one")])
    await storage.save_chat_buffer("k", "t2", [Turn.user("two")])
    await storage.save_core_memory("k", sample_core())
    await storage.save_chat_buffer("other", "t1", [Turn.user("keep")])

    await storage.delete_state("k")

    assert await storage.load_state("k", "t1") is None
    assert await storage.load_state("k", "t2") is None
    assert (await storage.load_state("other", "t1")).chat_history == [Turn.user("keep")]


@pytest.mark.asyncio
async def test_export_missing_state_raises(storage):
    with pytest.raises(StateNotFoundError):
        await storage.export_state("nobody", "default")


@pytest.mark.asyncio
async def test_flush_all(storage):
    await storage.save_chat_buffer("a", "t", [Turn.user("one")])
    await storage.save_core_memory("b", sample_core())

    await storage.flush_all()

    assert await storage.load_state("a", "t") is None
    assert await storage.load_state("b", "t") is None


@pytest.mark.asyncio
async def test_in_memory_storage_copies_values():
    storage = InMemoryStorage()
    core = sample_core()
    await storage.save_core_memory("k", core)
    core["zeta"].content = "mutated"

    state = await storage.load_state("k", "t")
    state.core_memory["alpha"].content = "mutated too"

    reloaded = await storage.load_state("k", "t")
    assert reloaded.core_memory == sample_core()


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    db_path = str(tmp_path / "nested" / "state.db")
    first = SQLiteStorage(db_path=db_path)
    await first.initialize()
    await first.save_chat_buffer("k", "t", sample_turns())
    await first.save_core_memory("k", sample_core())
    await first.close()

    second = SQLiteStorage(db_path=db_path)
    await second.initialize()
    try:
        state = await second.load_state("k", "t")
    finally:
        await second.close()

    assert state == SessionState(chat_history=sample_turns(), core_memory=sample_core())


@pytest.mark.asyncio
async def test_sqlite_requires_initialize(tmp_path):
    storage = SQLiteStorage(db_path=str(tmp_path / "state.db"))
    with pytest.raises(BackendUnavailableError):
        await storage.load_state("k", "t")
