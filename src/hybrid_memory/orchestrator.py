"""Memory orchestrator.

Top-level composition. Per user message it appends the turn to the session's
rolling window, gathers retrieved memories, the user profile and the rolling
summary, assembles a bounded context, generates the reply and records it.
Long-term writes and profile extraction run as background tasks tracked per
user so they never delay the reply.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable

from loguru import logger

from .config import MemoryConfig
from .context_assembler import ContextAssembler
from .embedding import create_embedder
from .exceptions import GenerationError, StorageError
from .importance import create_importance_scorer
from .interfaces import Embedder, ImportanceScorer, LLMClient
from .long_term import LongTermMemoryIndex
from .models import Diagnostics, Role, Turn
from .profile_store import UserProfileStore
from .pruner import SelectivePruner
from .retry import call_with_retry
from .rolling_window import RollingWindow
from .session import ConversationSession, SessionRegistry
from .storage.sqlite_store import SQLiteStore
from .summarizer import SummaryCompressor
from .summary_store import HierarchicalSummaryStore
from .token_counter import TokenCounter


class MemoryOrchestrator:
    """Hybrid conversational memory manager.

    Exposes :meth:`handle_turn`, :meth:`erase` and :meth:`get_diagnostics`.
    Holds no state between requests beyond the sessions in its registry and
    the bookkeeping for background work.
    """

    def __init__(
        self,
        *,
        llm: LLMClient,
        store: SQLiteStore,
        long_term: LongTermMemoryIndex,
        profiles: UserProfileStore,
        scorer: ImportanceScorer,
        token_counter: TokenCounter | None = None,
        registry: SessionRegistry | None = None,
        config: MemoryConfig | None = None,
    ):
        self.config = config or MemoryConfig()
        self._llm = llm
        self._store = store
        self._long_term = long_term
        self._profiles = profiles
        self._scorer = scorer
        self._counter = token_counter or TokenCounter(self.config.llm.model)
        self._compressor = SummaryCompressor(llm, self._counter, self.config.summary)
        self._assembler = ContextAssembler(
            self._counter, self.config.context, SelectivePruner(self._counter)
        )
        self._registry = registry or SessionRegistry()
        self._registry.set_factory(self._new_session)
        self._pending: dict[str, set[asyncio.Task]] = {}
        self._erasing: dict[str, asyncio.Event] = {}

    @classmethod
    async def from_config(
        cls,
        config: MemoryConfig,
        *,
        llm: LLMClient | None = None,
        embedder: Embedder | None = None,
        registry: SessionRegistry | None = None,
    ) -> "MemoryOrchestrator":
        """Build every collaborator from configuration.

        ``llm`` and ``embedder`` override the configured providers.
        """
        if llm is None:
            from .llm import OpenAICompatibleLLM

            llm = OpenAICompatibleLLM(config.llm)
        embedder = embedder or create_embedder(config.embedding)

        store = SQLiteStore(config.storage.sqlite_db_path)
        await store.initialize()

        long_term = LongTermMemoryIndex(
            store,
            embedder,
            config=config.retrieval,
            retry=config.retry,
            embedding_config=config.embedding,
        )
        profiles = UserProfileStore(
            store,
            llm,
            embedder=embedder,
            config=config.profile,
            retry=config.retry,
        )
        scorer = create_importance_scorer(config.importance, llm=llm)

        return cls(
            llm=llm,
            store=store,
            long_term=long_term,
            profiles=profiles,
            scorer=scorer,
            token_counter=TokenCounter(config.llm.model),
            registry=registry,
            config=config,
        )

    def _new_session(self, session_id: str, user_id: str) -> ConversationSession:
        window = RollingWindow(
            self.config.window.token_budget,
            self._counter,
            evict_fraction=self.config.window.evict_fraction,
        )
        summaries = HierarchicalSummaryStore(
            self._compressor, self._counter, self.config.summary
        )
        return ConversationSession(session_id, user_id, window, summaries)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _spawn(self, user_id: str, coro: Awaitable[Any], description: str) -> None:
        task = asyncio.create_task(self._run_background(coro, description))
        pending = self._pending.setdefault(user_id, set())
        pending.add(task)
        task.add_done_callback(pending.discard)

    @staticmethod
    async def _run_background(coro: Awaitable[Any], description: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning(f"Background {description} failed: {e}")

    async def _wait_for_user(self, user_id: str) -> None:
        pending = list(self._pending.get(user_id, ()))
        if pending:
            logger.debug(f"Waiting for {len(pending)} background tasks of user {user_id}")
            await asyncio.gather(*pending, return_exceptions=True)

    async def wait_for_background(self) -> None:
        """Wait until every background store and extraction has finished."""
        pending = [task for tasks in self._pending.values() for task in tasks]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _record_session_start(self, session_id: str, user_id: str) -> None:
        try:
            await self._store.insert_session(session_id, user_id)
        except StorageError as e:
            logger.warning(f"Could not record session start for {session_id}: {e}")

    # ------------------------------------------------------------------
    # Turn handling
    # ------------------------------------------------------------------

    async def handle_turn(self, user_id: str, session_id: str, user_message: str) -> str:
        """Process one user message and return the assistant reply.

        Never raises for memory or generation failures; if generation fails
        after all retries the configured fallback reply is returned.

        A turn arriving while the user is being erased waits for the erase to
        finish. A turn whose session was closed while it waited for the
        session lock starts over on a fresh session.
        """
        while True:
            await self._wait_for_erase(user_id)
            session, created = self._registry.get_or_create(session_id, user_id)
            if created:
                self._spawn(
                    user_id,
                    self._record_session_start(session_id, user_id),
                    "session start record",
                )

            async with session.lock:
                if session.closed:
                    logger.debug(f"Session {session_id} closed while turn waited, reopening")
                    continue
                if not session.resumed:
                    await self._resume_numbering(session)
                return await self._run_turn(session, user_message)

    async def _resume_numbering(self, session: ConversationSession) -> None:
        """Continue seq numbering after entries stored under a reused session id."""
        # Stores from an earlier session under this id may still be in flight
        await self._wait_for_user(session.user_id)
        try:
            last_seq = await self._store.get_max_seq(session.session_id)
        except StorageError as e:
            logger.warning(
                f"Could not read stored seq for session {session.session_id}, starting at 1: {e}"
            )
            last_seq = 0
        if last_seq:
            logger.info(f"Session {session.session_id} reused, continuing after seq {last_seq}")
        session.resume_after(last_seq)

    async def _run_turn(self, session: ConversationSession, user_message: str) -> str:
        """Handle one turn. Caller holds ``session.lock``."""
        user_id = session.user_id
        session_id = session.session_id

        user_turn = Turn(role=Role.USER, content=user_message, seq=session.next_seq())
        user_turn = user_turn.with_importance(await self._scorer.score(user_turn))

        # 1. Verbatim window (promotes evicted turns into the summary)
        await session.record(user_turn)
        self._spawn(
            user_id,
            self._long_term.store(user_id, user_turn, session_id=session_id),
            "long-term store",
        )

        # 2. Long-term memories not already in the window
        retrieved = await self._long_term.retrieve(
            user_id,
            user_message,
            top_k=self.config.retrieval.top_k,
            exclude_session_id=session_id,
            exclude_seq_from=session.window.oldest_seq,
        )

        # 3-5. Profile, rolling summary, verbatim window
        profile_text = await self._profiles.get(user_id)
        summary_text = session.summaries.render()
        window_turns = session.window.get_turns()

        # 6-7. Assemble within the total limit, pruning only the window
        context = self._assembler.assemble(
            window_turns,
            profile_text=profile_text,
            retrieved=retrieved,
            summary_text=summary_text,
        )

        # 8. Generate and record the reply
        reply, degraded = await self._generate(context.to_messages())
        assistant_turn = Turn(role=Role.ASSISTANT, content=reply, seq=session.next_seq())
        assistant_turn = assistant_turn.with_importance(
            await self._scorer.score(assistant_turn)
        )
        await session.record(assistant_turn)
        if not degraded:
            self._spawn(
                user_id,
                self._long_term.store(user_id, assistant_turn, session_id=session_id),
                "long-term store",
            )

        # 9. Periodic profile extraction
        session.user_turns += 1
        session.buffer_for_extraction(user_turn, assistant_turn)
        if session.user_turns % self.config.profile.extraction_interval == 0:
            batch = session.take_extraction_buffer()
            self._spawn(
                user_id,
                self._profiles.extract_and_merge(user_id, batch),
                "profile extraction",
            )

        session.diagnostics = Diagnostics(
            session_id=session_id,
            window_tokens=session.window.current_tokens,
            summary_tokens=session.summaries.total_tokens,
            retrieved_count=context.retrieved_count,
            budget_exceeded=context.budget_exceeded,
            window_over_budget=session.window.over_budget,
            degraded=degraded,
            turn_count=session.user_turns,
            promotions=session.window.promotion_count,
        )

        logger.debug(
            f"Turn handled for session {session_id}: "
            f"context={context.total_tokens}/{self.config.context.total_limit} tokens, "
            f"retrieved={context.retrieved_count}, degraded={degraded}"
        )
        return reply

    async def _generate(self, messages: list[dict]) -> tuple[str, bool]:
        """Call the LLM with retries.

        Returns:
            The reply text and whether the fallback reply was used
        """
        llm_config = self.config.llm
        try:
            result = await call_with_retry(
                lambda: self._llm.generate(
                    messages,
                    model_name=llm_config.model,
                    max_output_tokens=llm_config.max_output_tokens,
                    temperature=llm_config.temperature,
                ),
                attempts=self.config.retry.attempts,
                base_delay=self.config.retry.base_delay_seconds,
                timeout=llm_config.timeout_seconds,
                operation="generation",
            )
        except GenerationError as e:
            logger.error(f"Generation failed, returning fallback reply: {e}")
            return self.config.context.fallback_reply, True
        except Exception as e:
            logger.exception(f"Unexpected generation failure, returning fallback reply: {e}")
            return self.config.context.fallback_reply, True

        reply = result.content.strip()
        if not reply:
            logger.warning("LLM returned an empty reply; returning fallback reply")
            return self.config.context.fallback_reply, True
        return reply, False

    # ------------------------------------------------------------------
    # Session lifecycle, erasure, diagnostics
    # ------------------------------------------------------------------

    async def end_session(self, session_id: str) -> None:
        """Flush pending profile extraction and close the session.

        Raises:
            SessionNotFoundError: If no live session has this id
        """
        session = self._registry.get(session_id)
        async with session.lock:
            if session.closed:
                logger.debug(f"Session {session_id} already closed")
                return
            batch = session.take_extraction_buffer()
            if batch:
                self._spawn(
                    session.user_id,
                    self._profiles.extract_and_merge(session.user_id, batch),
                    "profile extraction",
                )
            self._registry.close(session_id)

        await self._wait_for_user(session.user_id)

        try:
            await self._store.end_session(session_id, session.user_turns)
        except StorageError as e:
            logger.warning(f"Could not record session end for {session_id}: {e}")

        logger.info(
            f"Session ended: {session_id} ({session.user_turns} turns, "
            f"{session.window.promotion_count} promotions)"
        )

    async def _wait_for_erase(self, user_id: str) -> None:
        while user_id in self._erasing:
            await self._erasing[user_id].wait()

    async def erase(self, user_id: str) -> None:
        """Remove everything stored for ``user_id``. Idempotent.

        Pending background work for the user is awaited first so nothing is
        written after the erase. The user's live sessions are closed, and new
        turns for the user wait until the erase has finished.

        Raises:
            StorageError: If the backend cannot complete the erasure
        """
        await self._wait_for_erase(user_id)
        erasing = self._erasing[user_id] = asyncio.Event()
        try:
            deleted = await self._erase_user(user_id)
        finally:
            del self._erasing[user_id]
            erasing.set()

        logger.info(f"Erased user {user_id}: {deleted} memory entries removed")

    async def _erase_user(self, user_id: str) -> int:
        await self._wait_for_user(user_id)

        for session in self._registry.sessions_for_user(user_id):
            async with session.lock:
                if session.closed:
                    continue
                session.window.clear()
                session.summaries.clear()
                session.take_extraction_buffer()
                self._registry.close(session.session_id)

        # Sessions may have spawned work while we waited on their locks
        await self._wait_for_user(user_id)

        deleted = await self._long_term.erase(user_id)
        await self._profiles.erase(user_id)
        await self._store.delete_sessions(user_id)
        self._pending.pop(user_id, None)
        return deleted

    def get_diagnostics(self, session_id: str) -> Diagnostics:
        """Snapshot of the session's last turn.

        Raises:
            SessionNotFoundError: If no live session has this id
        """
        return self._registry.get(session_id).diagnostics.model_copy()

    async def close(self) -> None:
        await self.wait_for_background()
        await self._store.close()
