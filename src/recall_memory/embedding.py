"""Embedding service for archival memory.

Provides vector embeddings using sentence-transformers. The model is loaded
lazily on first use to avoid startup overhead.
"""

from __future__ import annotations

import struct
from typing import TYPE_CHECKING

from loguru import logger

from .config import EmbeddingConfig
from .exceptions import EmbeddingFailureError

if TYPE_CHECKING:
    import numpy as np


class EmbeddingService:
    """Embedding service using sentence-transformers.

    Features:
    - Lazy model loading (only when first embedding is requested)
    - Batch encoding for efficiency
    - Serialization helpers for SQLite BLOB storage
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        self._config = config or EmbeddingConfig()
        self._model = None
        self._dimension = self._config.dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _ensure_model(self) -> None:
        """Lazy-load the sentence-transformers model."""
        if self._model is not None:
            return

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise EmbeddingFailureError(
                "sentence-transformers is required for EmbeddingService. "
                "Install with: pip install 'recall-memory[embeddings]'"
            ) from e

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def encode(self, texts: list[str]) -> list[list[float]]:
        """Encode texts into normalized embedding vectors."""
        if not texts:
            return []

        self._ensure_model()

        embeddings: np.ndarray = self._model.encode(
            texts, batch_size=32, show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()

    def encode_single(self, text: str) -> list[float]:
        results = self.encode([text])
        return results[0] if results else []

    @staticmethod
    def serialize_embedding(embedding: list[float]) -> bytes:
        """Pack an embedding as little-endian float32 for BLOB storage."""
        return struct.pack(f"<{len(embedding)}f", *embedding)

    @staticmethod
    def deserialize_embedding(blob: bytes) -> list[float]:
        count = len(blob) // 4  # float32 = 4 bytes
        return list(struct.unpack(f"<{count}f", blob))
