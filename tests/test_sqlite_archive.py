"""Tests for the SQLite archive backend."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest

from recall_memory.exceptions import EmbeddingFailureError, EntryNotFoundError
from recall_memory.models import ArchiveEntry
from recall_memory.storage import SQLiteArchive

from conftest import FakeEmbedder


async def add(archive, name: str, content: str, **kwargs) -> ArchiveEntry:
    return await archive.add_entry(ArchiveEntry(name=name, content=content, **kwargs))


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_add_entry_assigns_id_timestamp_and_embedding(archive, embedder):
    stored = await add(archive, "fact", "the sky is blue", metadata={"source": "chat"})

    assert stored.id
    assert stored.timestamp.tzinfo is not None
    assert embedder.calls == ["the sky is blue"]
    assert stored.embedding == pytest.approx(embedder.encode_single("the sky is blue"))

    fetched = await archive.get_entry(stored.id)
    assert fetched.name == "fact"
    assert fetched.content == "the sky is blue"
    assert fetched.metadata == {"source": "chat"}
    assert fetched.timestamp == stored.timestamp
    assert fetched.embedding == pytest.approx(stored.embedding)


@pytest.mark.asyncio
async def test_add_entry_keeps_given_embedding(archive, embedder):
    stored = await add(archive, "fact", "text", embedding=[0.5, 0.25, 0.0, 1.0])
    assert embedder.calls == []
    assert stored.embedding == [0.5, 0.25, 0.0, 1.0]


@pytest.mark.asyncio
async def test_add_entries(archive):
    stored = await archive.add_entries(
        [ArchiveEntry(name="a", content="one"), ArchiveEntry(name="b", content="two")]
    )
    assert len({entry.id for entry in stored}) == 2
    assert await archive.count() == 2


@pytest.mark.asyncio
async def test_get_missing_entry(archive):
    assert await archive.get_entry("missing") is None


@pytest.mark.asyncio
async def test_update_content_re_embeds(archive, embedder):
    stored = await add(archive, "fact", "old content")

    updated = await archive.update_entry(stored.id, {"content": "new content"})

    assert updated.content == "new content"
    assert embedder.calls[-1] == "new content"
    assert updated.embedding == pytest.approx(embedder.encode_single("new content"))


@pytest.mark.asyncio
async def test_update_name_keeps_embedding(archive, embedder):
    stored = await add(archive, "fact", "content")
    calls = len(embedder.calls)

    updated = await archive.update_entry(stored.id, {"name": "renamed"})

    assert updated.name == "renamed"
    assert len(embedder.calls) == calls
    assert (await archive.get_entry(stored.id)).embedding == pytest.approx(stored.embedding)


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields(archive):
    stored = await add(archive, "fact", "content")
    with pytest.raises(ValueError):
        await archive.update_entry(stored.id, {"id": "other"})


@pytest.mark.asyncio
async def test_update_missing_entry(archive):
    with pytest.raises(EntryNotFoundError):
        await archive.update_entry("missing", {"name": "x"})


@pytest.mark.asyncio
async def test_delete_entry_and_by_name(archive):
    keep = await add(archive, "keep", "one")
    gone = await add(archive, "dup", "two")
    await add(archive, "dup", "three")

    await archive.delete_entry(keep.id)
    assert await archive.get_entry(keep.id) is None

    assert await archive.delete_entries_by_name("dup") == 2
    assert await archive.get_entry(gone.id) is None
    assert await archive.count() == 0


@pytest.mark.asyncio
async def test_list_entries_newest_first(archive):
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for i, name in enumerate(["old", "middle", "new"]):
        stored = await add(archive, name, name)
        await archive.update_entry(stored.id, {"timestamp": base + timedelta(days=i)})

    listed = await archive.list_entries(limit=2)
    assert [e.name for e in listed] == ["new", "middle"]
    assert [e.name for e in await archive.list_entries(limit=2, offset=2)] == ["old"]


@pytest.mark.asyncio
async def test_clear(archive):
    await add(archive, "a", "one")
    await archive.clear()
    assert await archive.count() == 0


# ---------------------------------------------------------------------------
# Lexical search
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_search_lexical(archive):
    fox = await add(archive, "animal", "The red fox jumps")
    wine = await add(archive, "drink", "A glass of red wine")
    await add(archive, "sea", "A blue whale")

    hits = await archive.search_lexical("red")

    assert {hit.entry.id for hit in hits} == {fox.id, wine.id}
    assert all(hit.entry.embedding is None for hit in hits)


@pytest.mark.asyncio
async def test_search_lexical_matches_name(archive):
    stored = await add(archive, "birthday", "March third")
    hits = await archive.search_lexical("birthday")
    assert [hit.entry.id for hit in hits] == [stored.id]


@pytest.mark.asyncio
async def test_search_lexical_tolerates_fts_syntax(archive):
    await add(archive, "q", 'He said "hello" AND left')
    hits = await archive.search_lexical('"hello" AND (')
    assert len(hits) == 1


@pytest.mark.asyncio
async def test_search_lexical_empty_query(archive):
    await add(archive, "a", "anything")
    assert await archive.search_lexical("   ") == []


@pytest.mark.asyncio
async def test_fts_index_follows_updates_and_deletes(archive):
    stored = await add(archive, "sea", "A blue whale")

    await archive.update_entry(stored.id, {"content": "A green turtle"})
    assert await archive.search_lexical("whale") == []
    assert len(await archive.search_lexical("turtle")) == 1

    await archive.delete_entry(stored.id)
    assert await archive.search_lexical("turtle") == []


# ---------------------------------------------------------------------------
# Vector search
# ---------------------------------------------------------------------------


@pytest.fixture
async def vector_archive(tmp_path):
    embedder = FakeEmbedder(
        vectors={"a": [1.0, 0.0], "b": [0.0, 1.0], "c": [1.0, 1.0]}, dim=2
    )
    backend = SQLiteArchive(db_path=str(tmp_path / "vectors.db"), embedder=embedder)
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.mark.asyncio
async def test_search_vector_orders_by_cosine_distance(vector_archive):
    for text in ("b", "a", "c"):
        await add(vector_archive, text, text)

    hits = await vector_archive.search_vector([1.0, 0.0])

    assert [hit.entry.content for hit in hits] == ["a", "c", "b"]
    assert hits[0].distance == pytest.approx(0.0, abs=1e-6)
    assert hits[1].distance == pytest.approx(1 - 1 / math.sqrt(2), abs=1e-6)
    assert hits[2].distance == pytest.approx(1.0, abs=1e-6)


@pytest.mark.asyncio
async def test_search_vector_paging(vector_archive):
    for text in ("b", "a", "c"):
        await add(vector_archive, text, text)

    hits = await vector_archive.search_vector([1.0, 0.0], limit=1, offset=1)
    assert [hit.entry.content for hit in hits] == ["c"]


@pytest.mark.asyncio
async def test_search_vector_skips_other_dimensions(vector_archive):
    await add(vector_archive, "a", "a")
    await add(vector_archive, "odd", "odd", embedding=[1.0, 0.0, 0.0])

    hits = await vector_archive.search_vector([1.0, 0.0])
    assert [hit.entry.content for hit in hits] == ["a"]


@pytest.mark.asyncio
async def test_search_vector_zero_query(vector_archive):
    await add(vector_archive, "a", "a")
    assert await vector_archive.search_vector([0.0, 0.0]) == []


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_embed_without_embedder(tmp_path):
    backend = SQLiteArchive(db_path=str(tmp_path / "bare.db"))
    await backend.initialize()
    try:
        with pytest.raises(EmbeddingFailureError):
            await backend.embed("text")
    finally:
        await backend.close()


@pytest.mark.asyncio
async def test_entries_without_embedder_are_stored_unembedded(tmp_path):
    backend = SQLiteArchive(db_path=str(tmp_path / "lexical.db"), embedder=None)
    await backend.initialize()
    try:
        assert backend.can_embed is False
        stored = await add(backend, "fox", "The Red Fox is adaptable")
        assert stored.embedding is None
        assert (await backend.get_entry(stored.id)).embedding is None

        hits = await backend.search_lexical("red fox")
        assert [hit.entry.id for hit in hits] == [stored.id]
        assert await backend.search_vector([1.0, 0.0]) == []
    finally:
        await backend.close()


@pytest.mark.asyncio
async def test_update_without_embedder_drops_stale_embedding(tmp_path):
    backend = SQLiteArchive(db_path=str(tmp_path / "stale.db"), embedder=None)
    await backend.initialize()
    try:
        stored = await add(backend, "fox", "red fox", embedding=[1.0, 0.0])

        updated = await backend.update_entry(stored.id, {"content": "grey wolf"})

        assert updated.embedding is None
        assert await backend.search_vector([1.0, 0.0]) == []
    finally:
        await backend.close()


@pytest.mark.asyncio
async def test_embedder_errors_are_wrapped(tmp_path):
    class BrokenEmbedder:
        def encode_single(self, text):
            raise RuntimeError("model not loaded")

    backend = SQLiteArchive(db_path=str(tmp_path / "broken.db"), embedder=BrokenEmbedder())
    await backend.initialize()
    try:
        with pytest.raises(EmbeddingFailureError):
            await backend.embed("text")
        with pytest.raises(EmbeddingFailureError):
            await add(backend, "n", "text")
        assert await backend.count() == 0
    finally:
        await backend.close()


@pytest.mark.asyncio
async def test_empty_embedding_is_a_failure(tmp_path):
    class EmptyEmbedder:
        def encode_single(self, text):
            return []

    backend = SQLiteArchive(db_path=str(tmp_path / "empty.db"), embedder=EmptyEmbedder())
    await backend.initialize()
    try:
        with pytest.raises(EmbeddingFailureError):
            await backend.embed("text")
    finally:
        await backend.close()
