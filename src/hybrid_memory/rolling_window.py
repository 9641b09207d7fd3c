"""Rolling window of the most recent verbatim turns.

The window holds turns within a token budget. Appends are always accepted;
when the budget is exceeded the oldest block of whole exchanges is evicted
and returned so the owner can promote it into the summary store. The active
exchange at the tail is never evicted, even if it alone exceeds the budget.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any

from loguru import logger

from .exchanges import group_units, protected_start
from .models import Turn
from .token_counter import TokenCounter


class WindowState(str, Enum):
    ACTIVE = "active"
    OVERFLOWING = "overflowing"
    PROMOTING = "promoting"
    OVER_BUDGET = "over_budget"


class RollingWindow:
    """Token-budgeted verbatim buffer.

    Attributes:
        token_budget: Maximum content tokens held after eviction
        evict_fraction: Share of turns (by count) evicted per overflow
    """

    def __init__(
        self,
        token_budget: int,
        token_counter: TokenCounter,
        evict_fraction: float = 0.4,
    ) -> None:
        self.token_budget = token_budget
        self.evict_fraction = evict_fraction
        self.token_counter = token_counter
        self._turns: list[Turn] = []
        self._costs: dict[int, int] = {}
        self._current_tokens = 0
        self._state = WindowState.ACTIVE
        self._promotions = 0

        logger.debug(
            f"RollingWindow initialized with token_budget={token_budget}, "
            f"evict_fraction={evict_fraction}"
        )

    def append(self, turn: Turn) -> list[Turn]:
        """Add a turn, evicting the oldest exchanges if over budget.

        Returns:
            The evicted block in sequence order (empty if nothing was evicted)

        Raises:
            ValueError: If ``turn.seq`` does not increase on the last turn
        """
        if self._turns and turn.seq <= self._turns[-1].seq:
            raise ValueError(
                f"Turn seq must increase: got {turn.seq} after {self._turns[-1].seq}"
            )

        cost = self.token_counter.count_or_estimate(turn.content)
        self._turns.append(turn)
        self._costs[turn.seq] = cost
        self._current_tokens += cost

        logger.debug(
            f"Window append: seq={turn.seq}, role={turn.role.value}, tokens={cost}, "
            f"total={self._current_tokens}/{self.token_budget}"
        )

        if self._current_tokens <= self.token_budget:
            if self._state != WindowState.PROMOTING:
                self._state = WindowState.ACTIVE
            return []

        self._state = WindowState.OVERFLOWING
        evicted = self._evict()

        if evicted:
            self._state = WindowState.PROMOTING
            self._promotions += 1
            logger.info(
                f"Evicted {len(evicted)} turns (seq {evicted[0].seq}-{evicted[-1].seq}), "
                f"window now {self._current_tokens}/{self.token_budget} tokens"
            )

        if self._current_tokens > self.token_budget:
            logger.warning(
                f"Active exchange alone exceeds window budget: "
                f"{self._current_tokens}/{self.token_budget} tokens"
            )
            if not evicted:
                self._state = WindowState.OVER_BUDGET

        return evicted

    def promotion_complete(self) -> None:
        """Mark the last evicted block as absorbed by the summary store."""
        if self._current_tokens > self.token_budget:
            self._state = WindowState.OVER_BUDGET
        else:
            self._state = WindowState.ACTIVE

    def _evict(self) -> list[Turn]:
        """Evict the oldest ``evict_fraction`` of turns, rounded up to whole
        exchanges, then continue exchange by exchange until within budget.
        """
        start = protected_start(self._turns)
        units = group_units(self._turns[:start])
        if not units:
            return []

        target = math.ceil(len(self._turns) * self.evict_fraction)
        evict_count = 0
        evict_tokens = 0
        idx = 0

        while idx < len(units) and (
            evict_count < target
            or self._current_tokens - evict_tokens > self.token_budget
        ):
            evict_count += len(units[idx])
            evict_tokens += sum(self._costs[t.seq] for t in units[idx])
            idx += 1

        evicted = self._turns[:evict_count]
        self._turns = self._turns[evict_count:]
        for turn in evicted:
            del self._costs[turn.seq]
        self._current_tokens -= evict_tokens
        return evicted

    def get_turns(self) -> list[Turn]:
        """Copy of the turns currently held, oldest first."""
        return self._turns.copy()

    def to_chat_messages(self) -> list[dict[str, Any]]:
        return [turn.to_chat_message() for turn in self._turns]

    def clear(self) -> list[Turn]:
        """Remove and return every held turn."""
        turns = self._turns
        self._turns = []
        self._costs.clear()
        self._current_tokens = 0
        self._state = WindowState.ACTIVE
        return turns

    @property
    def current_tokens(self) -> int:
        return self._current_tokens

    @property
    def state(self) -> WindowState:
        return self._state

    @property
    def over_budget(self) -> bool:
        return self._current_tokens > self.token_budget

    @property
    def promotion_count(self) -> int:
        return self._promotions

    @property
    def turn_count(self) -> int:
        return len(self._turns)

    @property
    def oldest_seq(self) -> int | None:
        """Sequence number of the oldest verbatim turn, or None if empty."""
        return self._turns[0].seq if self._turns else None

    @property
    def last_turn(self) -> Turn | None:
        return self._turns[-1] if self._turns else None
