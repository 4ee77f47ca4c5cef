"""Tests for the memory tool adapter."""

from __future__ import annotations

import json

import pytest

from recall_memory.config import MemoryConfig
from recall_memory.engine import MemoryEngine
from recall_memory.summarizer import ConversationSummarizer
from recall_memory.tools import MemoryTools


@pytest.fixture
async def tools(memory_storage, archive, fake_llm, memory_key, token_counter):
    engine = MemoryEngine(
        storage=memory_storage,
        archive=archive,
        summarizer=ConversationSummarizer(fake_llm),
        memory_key=memory_key,
        config=MemoryConfig(core_block_token_limit=1000),
        token_counter=token_counter,
    )
    await engine.initialize()
    yield MemoryTools(engine)
    await engine.close()


def test_definitions():
    definitions = MemoryTools.definitions()
    names = [d["function"]["name"] for d in definitions]

    assert names == [
        "core_memory_append",
        "core_memory_replace",
        "archival_memory_search",
        "archival_memory_insert",
    ]
    assert MemoryTools.names() == names
    for definition in definitions:
        assert definition["type"] == "function"
        assert definition["function"]["description"]
        assert definition["function"]["parameters"]["type"] == "object"

    insert = definitions[3]["function"]["parameters"]
    assert sorted(insert["required"]) == ["content", "name"]
    assert insert["properties"]["name"]["description"] == "The name of the memory"


@pytest.mark.asyncio
async def test_core_memory_replace(tools):
    result = await tools.execute("core_memory_replace", {"block": "user", "content": "Kim"})

    assert result["status"] == "success"
    core = await tools._engine.get_core_memory()
    assert core["user"].content == "Kim"


@pytest.mark.asyncio
async def test_core_memory_append_with_json_arguments(tools):
    arguments = json.dumps({"block": "user", "content": "likes tea"})

    result = await tools.execute("core_memory_append", arguments)

    assert result == {"status": "success", "message": "Updated user block with: likes tea"}
    core = await tools._engine.get_core_memory()
    assert core["user"].content == "No information available\nlikes tea"


@pytest.mark.asyncio
async def test_budget_error_is_returned(tools):
    result = await tools.execute(
        "core_memory_replace", {"block": "user", "content": "x" * 1001}
    )
    assert result["status"] == "error"
    assert "exceeds token limit" in result["message"]


@pytest.mark.asyncio
async def test_invalid_arguments_are_returned(tools):
    result = await tools.execute("core_memory_replace", {"block": "user"})
    assert result["status"] == "error"
    assert result["message"].startswith("Invalid arguments")

    result = await tools.execute("archival_memory_search", "not json")
    assert result["status"] == "error"


@pytest.mark.asyncio
async def test_unknown_tool(tools):
    with pytest.raises(ValueError):
        await tools.execute("send_email", {})


@pytest.mark.asyncio
async def test_archival_insert_and_search(tools):
    inserted = await tools.execute(
        "archival_memory_insert", {"name": "pet", "content": "The user has a cat named Miso"}
    )
    assert inserted["status"] == "success"
    assert inserted["data"]["name"] == "pet"
    assert "embedding" not in inserted["data"]

    found = await tools.execute("archival_memory_search", {"query": "cat named Miso"})

    assert found["status"] == "success"
    assert len(found["data"]) == 1
    hit = found["data"][0]
    assert hit["entry"]["id"] == inserted["data"]["id"]
    assert "embedding" not in hit["entry"]
    assert hit["matches"]["exact_phrase"] is True
    json.dumps(found)
