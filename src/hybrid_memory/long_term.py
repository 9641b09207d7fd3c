"""Long-term memory index.

Every turn is embedded and persisted in its user's partition. Retrieval is a
cosine-similarity scan over that partition only, skipping entries that are
still in the current session's verbatim window.

Failures never reach the chat turn: a store that cannot embed or persist is
logged and dropped, and a retrieval that fails returns no memories.
"""

from __future__ import annotations

import asyncio

import numpy as np
from loguru import logger

from .config import EmbeddingConfig, RetrievalConfig, RetryConfig
from .embedding import cosine_similarities
from .exceptions import StorageError
from .interfaces import Embedder
from .models import MemoryEntry, Turn
from .retry import call_with_retry
from .storage.sqlite_store import SQLiteStore


class LongTermMemoryIndex:
    """Persistent, per-user semantic memory."""

    def __init__(
        self,
        store: SQLiteStore,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
        retry: RetryConfig | None = None,
        embedding_config: EmbeddingConfig | None = None,
    ):
        self._store = store
        self._embedder = embedder
        self._config = config or RetrievalConfig()
        self._retry = retry or RetryConfig()
        self._embed_timeout = (embedding_config or EmbeddingConfig()).timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]

    async def _embed(self, text: str) -> list[float]:
        return await call_with_retry(
            lambda: self._embedder.embed(text),
            attempts=self._retry.attempts,
            base_delay=self._retry.base_delay_seconds,
            timeout=self._embed_timeout,
            operation="embedding",
        )

    async def store(
        self, user_id: str, turn: Turn, session_id: str | None = None
    ) -> MemoryEntry | None:
        """Embed and persist one turn.

        Returns:
            The stored entry, or None if it was dropped
        """
        try:
            embedding = await self._embed(turn.content)
        except Exception as e:
            logger.warning(
                f"Dropping long-term store for user {user_id} seq={turn.seq}: {e}"
            )
            return None

        if len(embedding) != self._embedder.dimension:
            logger.warning(
                f"Dropping long-term store for user {user_id} seq={turn.seq}: "
                f"embedding has {len(embedding)} dims, expected {self._embedder.dimension}"
            )
            return None

        entry = MemoryEntry(
            user_id=user_id,
            session_id=session_id,
            seq=turn.seq,
            role=turn.role,
            content=turn.content,
            embedding=embedding,
            timestamp=turn.timestamp,
        )

        async with self._get_lock(user_id):
            try:
                await self._store.insert_memory_entry(entry)
            except StorageError as e:
                logger.warning(f"Dropping long-term store for user {user_id}: {e}")
                return None

        return entry

    async def retrieve(
        self,
        user_id: str,
        query_text: str,
        top_k: int | None = None,
        exclude_session_id: str | None = None,
        exclude_seq_from: int | None = None,
    ) -> list[MemoryEntry]:
        """Find the entries most similar to ``query_text`` in one partition.

        Args:
            user_id: Partition to search
            query_text: Text to embed and compare
            top_k: Maximum results (defaults to config)
            exclude_session_id: Session whose recent turns are already verbatim
            exclude_seq_from: Entries of ``exclude_session_id`` with seq at or
                above this value are skipped

        Returns:
            Entries ranked by similarity, highest first (ties: newer first)
        """
        top_k = self._config.top_k if top_k is None else top_k
        if top_k <= 0 or not query_text.strip():
            return []

        try:
            query = await self._embed(query_text)
        except Exception as e:
            logger.warning(f"Retrieval embedding failed for user {user_id}: {e}")
            return []

        try:
            entries = await self._store.get_memory_entries(user_id)
        except StorageError as e:
            logger.warning(f"Retrieval failed for user {user_id}: {e}")
            return []

        candidates = [
            entry
            for entry in entries
            if entry.user_id == user_id
            and len(entry.embedding) == len(query)
            and not (
                exclude_seq_from is not None
                and entry.session_id == exclude_session_id
                and entry.seq >= exclude_seq_from
            )
        ]
        if not candidates:
            return []

        matrix = np.asarray([entry.embedding for entry in candidates], dtype=np.float32)
        scores = cosine_similarities(query, matrix)

        ranked = sorted(
            zip(candidates, scores.tolist()),
            key=lambda pair: (-pair[1], -pair[0].timestamp.timestamp()),
        )

        results = []
        for entry, score in ranked:
            if score < self._config.min_similarity:
                break
            results.append(entry.model_copy(update={"similarity": score}))
            if len(results) >= top_k:
                break

        logger.debug(
            f"Retrieved {len(results)}/{len(candidates)} memories for user {user_id}"
        )
        return results

    async def count(self, user_id: str) -> int:
        return await self._store.count_memory_entries(user_id)

    async def erase(self, user_id: str) -> int:
        """Remove every entry in the user's partition. Idempotent.

        Raises:
            StorageError: If the backend cannot delete the partition
        """
        async with self._get_lock(user_id):
            return await self._store.delete_memory_entries(user_id)
