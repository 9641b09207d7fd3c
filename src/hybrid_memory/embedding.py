"""Embedding collaborators and vector helpers.

``SentenceTransformerEmbedder`` lazy-loads a sentence-transformers model on
first use and runs encoding in a worker thread so the event loop stays free
for other conversations. ``HashingEmbedder`` is a deterministic feature
hashing model for offline deployments and tests.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from typing import Sequence

import numpy as np
from loguru import logger

from .config import EmbeddingConfig
from .exceptions import EmbeddingError

_TOKEN_PATTERN = re.compile(r"\w+")


class SentenceTransformerEmbedder:
    """Embedding service using sentence-transformers."""

    def __init__(self, config: EmbeddingConfig | None = None):
        """Initialize embedding service.

        Args:
            config: Embedding configuration
        """
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

        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        # Update dimension from actual model
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def encode(self, texts: list[str]) -> list[list[float]]:
        """Encode texts into normalized embedding vectors (blocking)."""
        if not texts:
            return []

        self._ensure_model()

        embeddings: np.ndarray = self._model.encode(
            texts,
            batch_size=32,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()

    async def embed(self, text: str) -> list[float]:
        try:
            results = await asyncio.to_thread(self.encode, [text])
        except (ImportError, OSError) as e:
            raise EmbeddingError(
                f"Embedding model {self._config.model!r} unavailable: {e}",
                transient=False,
            ) from e
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e
        return results[0] if results else []


class HashingEmbedder:
    """Bag-of-words feature hashing into a fixed number of buckets.

    Each lowercased word token is hashed with blake2b to a bucket and a sign;
    the resulting vector is L2-normalized. Texts sharing words get positive
    cosine similarity, which is enough for keyword-style recall.
    """

    def __init__(self, dimension: int = 256):
        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def encode_single(self, text: str) -> list[float]:
        vector = np.zeros(self._dimension, dtype=np.float32)
        for token in _TOKEN_PATTERN.findall(text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            value = int.from_bytes(digest, "little")
            index = value % self._dimension
            sign = 1.0 if (value >> 63) & 1 == 0 else -1.0
            vector[index] += sign

        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector.tolist()

    async def embed(self, text: str) -> list[float]:
        return self.encode_single(text)


def create_embedder(
    config: EmbeddingConfig,
) -> SentenceTransformerEmbedder | HashingEmbedder:
    """Build the embedder named by ``config.provider``."""
    if config.provider == "hashing":
        logger.info(f"Using hashing embedder (dim={config.dimension})")
        return HashingEmbedder(config.dimension)
    return SentenceTransformerEmbedder(config)


def serialize_embedding(embedding: Sequence[float]) -> bytes:
    """Pack an embedding as little-endian float32 for SQLite BLOB storage."""
    return np.asarray(embedding, dtype="<f4").tobytes()


def deserialize_embedding(blob: bytes) -> list[float]:
    """Unpack an embedding stored by :func:`serialize_embedding`."""
    return np.frombuffer(blob, dtype="<f4").tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for mismatched or zero vectors."""
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def cosine_similarities(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against each row of ``matrix``."""
    q = np.asarray(query, dtype=np.float32)
    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom > 0, matrix @ q / denom, 0.0)
    return scores
