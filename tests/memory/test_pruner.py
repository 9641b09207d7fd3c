"""Tests for SelectivePruner."""

import pytest

from hybrid_memory.models import Role, Turn
from hybrid_memory.pruner import SelectivePruner

# 40 chars == 10 tokens, plus 4 per-message overhead
TURN_COST = 14


def _conversation(scores: list[int | None]) -> list[Turn]:
    turns = []
    for i, score in enumerate(scores, 1):
        role = Role.USER if i % 2 else Role.ASSISTANT
        turns.append(Turn(role=role, content="x" * 40, seq=i, importance=score))
    return turns


@pytest.fixture
def pruner(token_counter):
    return SelectivePruner(token_counter)


class TestPrune:
    def test_within_budget_keeps_everything(self, pruner):
        turns = _conversation([5] * 5)
        result = pruner.prune(turns, 5 * TURN_COST)
        assert result.kept == turns
        assert result.dropped == []
        assert result.budget_exceeded is False

    def test_ties_drop_oldest_exchange_first(self, pruner):
        turns = _conversation([5] * 7)
        result = pruner.prune(turns, 6 * TURN_COST)
        assert [t.seq for t in result.dropped] == [1, 2]
        assert [t.seq for t in result.kept] == [3, 4, 5, 6, 7]
        assert result.total_tokens == 5 * TURN_COST

    def test_lowest_score_dropped_with_partner(self, pruner):
        turns = _conversation([5, 5, 2, 5, 5, 5, 5])
        result = pruner.prune(turns, 6 * TURN_COST)
        assert [t.seq for t in result.dropped] == [3, 4]
        assert [t.seq for t in result.kept] == [1, 2, 5, 6, 7]

    def test_unscored_turns_count_as_neutral(self, pruner):
        turns = _conversation([6, 6, None, None, 4, 6, 6, 6, 6])
        result = pruner.prune(turns, 8 * TURN_COST)
        assert [t.seq for t in result.dropped] == [5, 6]

    def test_active_exchange_survives_low_scores(self, pruner):
        turns = _conversation([9, 9, 9, 9, 1, 1, 1])
        result = pruner.prune(turns, 3 * TURN_COST)
        assert [t.seq for t in result.kept] == [5, 6, 7]
        assert result.budget_exceeded is False

    def test_budget_exceeded_keeps_protected_exchange(self, pruner):
        turns = _conversation([5] * 7)
        result = pruner.prune(turns, TURN_COST)
        assert [t.seq for t in result.kept] == [5, 6, 7]
        assert result.budget_exceeded is True
        assert result.total_tokens == 3 * TURN_COST

    def test_deterministic(self, pruner):
        turns = _conversation([3, 7, 5, 5, 2, 8, 5, 5, 4, 6, 5])
        first = pruner.prune(turns, 7 * TURN_COST)
        for _ in range(5):
            again = pruner.prune(list(turns), 7 * TURN_COST)
            assert [t.seq for t in again.kept] == [t.seq for t in first.kept]

    def test_kept_preserves_order(self, pruner):
        turns = _conversation([1, 9, 9, 9, 2, 9, 5, 5, 5])
        result = pruner.prune(turns, 5 * TURN_COST)
        seqs = [t.seq for t in result.kept]
        assert seqs == sorted(seqs)
