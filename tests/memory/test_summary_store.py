"""Tests for HierarchicalSummaryStore promotion, cascade and boundedness."""

from unittest.mock import AsyncMock

import pytest

from hybrid_memory.config import SummaryConfig
from hybrid_memory.exceptions import GenerationError
from hybrid_memory.models import GenerationResult, Role, Turn
from hybrid_memory.summarizer import SummaryCompressor
from hybrid_memory.summary_store import (
    MIDDLE_LABEL,
    NEWEST_LABEL,
    OLDEST_LABEL,
    HierarchicalSummaryStore,
)

# Allowance for the level labels and separators added by render()
RENDER_OVERHEAD = 30


def _pair(seq: int, text: str = "") -> list[Turn]:
    body = text or f"we talked about topic {seq} in some detail ".ljust(160, ".")
    return [
        Turn(role=Role.USER, content=body, seq=seq),
        Turn(role=Role.ASSISTANT, content=f"reply to {seq} ".ljust(120, "."), seq=seq + 1),
    ]


def _echo_llm() -> AsyncMock:
    """Echoes the last 400 characters of the prompt, so short inputs hit the fallback."""

    async def generate(messages, **kwargs):
        excerpt = messages[-1]["content"]
        return GenerationResult(content=excerpt[-400:])

    llm = AsyncMock()
    llm.generate.side_effect = generate
    return llm


class TestBoundedness:
    @pytest.mark.asyncio
    async def test_200_turns_stay_within_bound(self, token_counter):
        compressor = SummaryCompressor(_echo_llm(), token_counter)
        store = HierarchicalSummaryStore(compressor, token_counter)

        for seq in range(1, 201, 2):
            await store.promote(_pair(seq))
            assert store.total_tokens <= store.bound
            assert token_counter.count(store.render()) <= store.bound + RENDER_OVERHEAD
            for level, threshold in zip(store.levels, store.thresholds):
                assert level.approx_tokens <= threshold

        assert store.bound == 500 + 350 + 250

    @pytest.mark.asyncio
    async def test_bound_holds_when_llm_always_fails(self, token_counter):
        llm = AsyncMock()
        llm.generate.side_effect = GenerationError("down")
        compressor = SummaryCompressor(llm, token_counter)
        store = HierarchicalSummaryStore(compressor, token_counter)

        for seq in range(1, 201, 2):
            await store.promote(_pair(seq))
            assert store.total_tokens <= store.bound

        assert any(level.unverified for level in store.levels)

    @pytest.mark.asyncio
    async def test_single_level_configuration(self, token_counter):
        config = SummaryConfig(levels=1, level_thresholds=[120])
        compressor = SummaryCompressor(_echo_llm(), token_counter, config)
        store = HierarchicalSummaryStore(compressor, token_counter, config)

        for seq in range(1, 61, 2):
            await store.promote(_pair(seq))
            assert store.total_tokens <= 120


class TestCascade:
    @pytest.mark.asyncio
    async def test_level0_cascades_into_level1(self, token_counter):
        config = SummaryConfig(levels=2, level_thresholds=[60, 200])
        llm = _echo_llm()
        compressor = SummaryCompressor(llm, token_counter, config)
        store = HierarchicalSummaryStore(compressor, token_counter, config)

        await store.promote(_pair(1, "short note one"))
        assert store.levels[1].is_empty

        for seq in range(3, 15, 2):
            await store.promote(_pair(seq))

        levels = store.levels
        assert not levels[1].is_empty
        assert levels[1].covered_range[0] == 1
        if not levels[0].is_empty:
            assert levels[0].covered_range[0] > levels[1].covered_range[1]

    @pytest.mark.asyncio
    async def test_covered_range_tracks_promotions(self, token_counter):
        compressor = SummaryCompressor(_echo_llm(), token_counter)
        store = HierarchicalSummaryStore(compressor, token_counter)

        await store.promote(_pair(1, "first"))
        await store.promote(_pair(3, "second"))

        assert store.levels[0].covered_range == (1, 4)
        assert store.last_promoted_seq == 4


class TestOrdering:
    @pytest.mark.asyncio
    async def test_out_of_order_promotion_rejected(self, token_counter):
        store = HierarchicalSummaryStore(SummaryCompressor(None, token_counter), token_counter)
        await store.promote(_pair(5))
        with pytest.raises(ValueError):
            await store.promote(_pair(1))

    @pytest.mark.asyncio
    async def test_unsorted_block_rejected(self, token_counter):
        store = HierarchicalSummaryStore(SummaryCompressor(None, token_counter), token_counter)
        turns = list(reversed(_pair(1)))
        with pytest.raises(ValueError):
            await store.promote(turns)

    @pytest.mark.asyncio
    async def test_empty_promotion_is_noop(self, token_counter):
        store = HierarchicalSummaryStore(SummaryCompressor(None, token_counter), token_counter)
        await store.promote([])
        assert store.render() == ""


class TestRender:
    @pytest.mark.asyncio
    async def test_labels_run_oldest_to_newest(self, token_counter):
        store = HierarchicalSummaryStore(SummaryCompressor(None, token_counter), token_counter)
        store._levels[2] = store._make_level(2, "ancient history", (1, 10), False)
        store._levels[1] = store._make_level(1, "middle history", (11, 20), False)
        store._levels[0] = store._make_level(0, "recent history", (21, 30), False)

        rendered = store.render()

        assert rendered.index(OLDEST_LABEL) < rendered.index(MIDDLE_LABEL)
        assert rendered.index(MIDDLE_LABEL) < rendered.index(NEWEST_LABEL)
        assert rendered.endswith("recent history")

    @pytest.mark.asyncio
    async def test_empty_levels_skipped(self, token_counter):
        store = HierarchicalSummaryStore(SummaryCompressor(None, token_counter), token_counter)
        await store.promote(_pair(1))
        rendered = store.render()
        assert rendered.startswith(NEWEST_LABEL)
        assert OLDEST_LABEL not in rendered

    def test_clear(self, token_counter):
        store = HierarchicalSummaryStore(SummaryCompressor(None, token_counter), token_counter)
        store._levels[0] = store._make_level(0, "text", (1, 2), False)
        store.clear()
        assert store.total_tokens == 0
        assert store.last_promoted_seq is None
