"""Importance-ranked pruning of verbatim turns."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from loguru import logger

from .exchanges import group_units, protected_start
from .importance import NEUTRAL_SCORE
from .models import Turn
from .token_counter import TokenCounter

# Matches the per-message overhead in TokenCounter.count_messages
MESSAGE_OVERHEAD = 4


@dataclass
class PruneResult:
    """Surviving turns in original order plus what was removed."""

    kept: list[Turn] = field(default_factory=list)
    dropped: list[Turn] = field(default_factory=list)
    total_tokens: int = 0
    budget_exceeded: bool = False


class SelectivePruner:
    """Drops the least important exchanges until the turns fit a budget.

    The protected active exchange is never removed. Among the rest, the
    lowest-scoring turn (unscored turns count as neutral, ties go to the
    oldest) is removed together with the rest of its exchange. Given the same
    scores and token counts the result is always the same.
    """

    def __init__(self, token_counter: TokenCounter):
        self.token_counter = token_counter

    def turn_cost(self, turn: Turn) -> int:
        return self.token_counter.count_or_estimate(turn.content) + MESSAGE_OVERHEAD

    def prune(self, turns: Sequence[Turn], token_budget: int) -> PruneResult:
        turns = list(turns)
        costs = {turn.seq: self.turn_cost(turn) for turn in turns}
        total = sum(costs.values())

        if total <= token_budget:
            return PruneResult(kept=turns, total_tokens=total)

        start = protected_start(turns)
        protected = turns[start:]
        units = group_units(turns[:start])
        dropped: list[Turn] = []

        while total > token_budget and units:
            # (score, seq) ordering: lowest score first, oldest first on ties
            victim_idx = min(
                range(len(units)),
                key=lambda i: min(
                    (
                        turn.importance if turn.importance is not None else NEUTRAL_SCORE,
                        turn.seq,
                    )
                    for turn in units[i]
                ),
            )
            unit = units.pop(victim_idx)
            dropped.extend(unit)
            total -= sum(costs[turn.seq] for turn in unit)
            logger.debug(
                f"Pruned exchange seq {unit[0].seq}-{unit[-1].seq} "
                f"(total now {total}/{token_budget})"
            )

        kept = [turn for unit in units for turn in unit] + protected
        dropped.sort(key=lambda turn: turn.seq)
        budget_exceeded = total > token_budget

        if budget_exceeded:
            logger.warning(
                f"Budget exceeded after pruning: protected exchange needs "
                f"{total} tokens, budget is {token_budget}"
            )
        else:
            logger.info(
                f"Pruned {len(dropped)} turns to fit budget "
                f"({total}/{token_budget} tokens)"
            )

        return PruneResult(
            kept=kept,
            dropped=dropped,
            total_tokens=total,
            budget_exceeded=budget_exceeded,
        )
