"""Conversation sessions and the registry that owns them."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable

from loguru import logger

from .exceptions import SessionNotFoundError
from .models import Diagnostics, Turn
from .rolling_window import RollingWindow
from .summary_store import HierarchicalSummaryStore


class ConversationSession:
    """One continuous session for one user.

    Owns the rolling window and summary store. ``lock`` serializes turns so
    at most one is in flight per session; sequence numbers are handed out
    synchronously by :meth:`next_seq`.

    A session id may be reused once its session is closed. ``resumed`` stays
    False until numbering has been continued past whatever an earlier
    session under the same id already stored; ``closed`` is set when the
    registry drops the session.
    """

    def __init__(
        self,
        session_id: str,
        user_id: str,
        window: RollingWindow,
        summaries: HierarchicalSummaryStore,
    ):
        self.session_id = session_id
        self.user_id = user_id
        self.window = window
        self.summaries = summaries
        self.lock = asyncio.Lock()
        self.started_at = datetime.now(timezone.utc)
        self.user_turns = 0
        self.diagnostics = Diagnostics(session_id=session_id)
        self.resumed = False
        self.closed = False
        self._next_seq = 1
        self._extraction_buffer: list[Turn] = []

    def next_seq(self) -> int:
        seq = self._next_seq
        self._next_seq += 1
        return seq

    def resume_after(self, seq: int) -> None:
        """Continue numbering after a sequence number already in use."""
        self._next_seq = max(self._next_seq, seq + 1)
        self.resumed = True

    async def record(self, turn: Turn) -> list[Turn]:
        """Append a turn to the window and promote whatever it evicts.

        Returns:
            The evicted block (already absorbed by the summary store)
        """
        evicted = self.window.append(turn)
        if evicted:
            await self.summaries.promote(evicted)
            self.window.promotion_complete()
        return evicted

    def buffer_for_extraction(self, *turns: Turn) -> None:
        self._extraction_buffer.extend(turns)

    def take_extraction_buffer(self) -> list[Turn]:
        batch = self._extraction_buffer
        self._extraction_buffer = []
        return batch


SessionFactory = Callable[[str, str], ConversationSession]


class SessionRegistry:
    """Live sessions keyed by session id.

    Owned by the serving layer and handed to the orchestrator; there is no
    module-level session state.
    """

    def __init__(self, factory: SessionFactory | None = None):
        self._factory = factory
        self._sessions: dict[str, ConversationSession] = {}

    def set_factory(self, factory: SessionFactory) -> None:
        self._factory = factory

    def get_or_create(
        self, session_id: str, user_id: str
    ) -> tuple[ConversationSession, bool]:
        """Return the session, creating it on first use.

        Returns:
            The session and whether it was just created

        Raises:
            ValueError: If the session id is registered to another user
        """
        session = self._sessions.get(session_id)
        if session is not None:
            if session.user_id != user_id:
                raise ValueError(
                    f"Session {session_id} belongs to a different user"
                )
            return session, False

        if self._factory is None:
            raise RuntimeError("SessionRegistry has no session factory")

        session = self._factory(session_id, user_id)
        self._sessions[session_id] = session
        logger.info(f"Session started: {session_id} (user {user_id})")
        return session, True

    def get(self, session_id: str) -> ConversationSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(session_id) from None

    def close(self, session_id: str) -> ConversationSession | None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.closed = True
            logger.info(f"Session closed: {session_id}")
        return session

    def sessions_for_user(self, user_id: str) -> list[ConversationSession]:
        return [s for s in self._sessions.values() if s.user_id == user_id]

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
