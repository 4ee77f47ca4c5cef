"""
recall-memory test fixtures
Deterministic tokenizer, LLM and embedder fakes shared across tests.
"""

from __future__ import annotations

import hashlib
from uuid import uuid4

import pytest

from recall_memory.storage import InMemoryStorage, SQLiteArchive, SQLiteStorage
from recall_memory.token_counter import TokenCounter


class CharEncoder:
    """One token per character."""

    def encode(self, text: str) -> list[str]:
        return list(text)


class FakeLLM:
    """Streams a canned response and records every request."""

    def __init__(self, response: str = "summary", chunk_size: int = 3):
        self.response = response
        self.chunk_size = chunk_size
        self.calls: list[dict] = []

    async def chat_completion(self, messages, system=None):
        self.calls.append({"messages": messages, "system": system})
        for i in range(0, len(self.response), self.chunk_size):
            yield self.response[i:i + self.chunk_size]


class FakeEmbedder:
    """Deterministic embeddings; fixed vectors can be registered per text."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, dim: int = 4):
        self.vectors = dict(vectors or {})
        self.dim = dim
        self.calls: list[str] = []

    def encode_single(self, text: str) -> list[float]:
        self.calls.append(text)
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [0.1 + b / 255.0 for b in digest[: self.dim]]


@pytest.fixture
def token_counter():
    return TokenCounter(encoder=CharEncoder())


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def memory_key():
    return f"user-{uuid4().hex[:8]}"


@pytest.fixture
def memory_storage():
    return InMemoryStorage()


@pytest.fixture
async def sqlite_storage(tmp_path):
    storage = SQLiteStorage(db_path=str(tmp_path / "state.db"))
    await storage.initialize()
    yield storage
    await storage.close()


@pytest.fixture
async def archive(tmp_path, embedder):
    backend = SQLiteArchive(db_path=str(tmp_path / "archive.db"), embedder=embedder)
    await backend.initialize()
    yield backend
    await backend.close()
