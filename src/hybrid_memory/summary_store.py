"""Hierarchical summary store.

Evicted turns are compressed into level 0. When a level grows past its
threshold it is re-summarized together with the next (older) level into that
level and then cleared, cascading upward. The top level is re-summarized in
place and hard-fitted to its threshold, so the store never holds more than
the sum of the thresholds regardless of conversation length.
"""

from __future__ import annotations

import asyncio
from typing import Sequence

from loguru import logger

from .config import SummaryConfig
from .models import SummaryLevel, Turn
from .summarizer import SummaryCompressor
from .token_counter import TokenCounter

OLDEST_LABEL = "Early conversation:"
MIDDLE_LABEL = "Earlier context:"
NEWEST_LABEL = "Recent context:"


def _merge_range(
    older: tuple[int, int] | None, newer: tuple[int, int] | None
) -> tuple[int, int] | None:
    if older is None:
        return newer
    if newer is None:
        return older
    return (older[0], newer[1])


class HierarchicalSummaryStore:
    """Cascading summary levels owned by one conversation session."""

    def __init__(
        self,
        compressor: SummaryCompressor,
        token_counter: TokenCounter,
        config: SummaryConfig | None = None,
    ):
        self._compressor = compressor
        self._counter = token_counter
        self._config = config or SummaryConfig()
        self._levels = [SummaryLevel(level_index=i) for i in range(self._config.levels)]
        self._last_promoted_seq: int | None = None
        self._lock = asyncio.Lock()

    @property
    def levels(self) -> list[SummaryLevel]:
        return [level.model_copy() for level in self._levels]

    @property
    def thresholds(self) -> list[int]:
        return list(self._config.level_thresholds)

    @property
    def bound(self) -> int:
        """Upper bound on :attr:`total_tokens`."""
        return sum(self._config.level_thresholds)

    @property
    def total_tokens(self) -> int:
        return sum(level.approx_tokens for level in self._levels)

    @property
    def last_promoted_seq(self) -> int | None:
        return self._last_promoted_seq

    async def promote(self, turns: Sequence[Turn]) -> None:
        """Append a digest of ``turns`` to level 0 and cascade.

        Raises:
            ValueError: If the turns are not in sequence order or precede a
                block that was already promoted
        """
        if not turns:
            return

        seqs = [turn.seq for turn in turns]
        if any(b <= a for a, b in zip(seqs, seqs[1:])):
            raise ValueError(f"Promoted turns must be in seq order: {seqs}")

        async with self._lock:
            if self._last_promoted_seq is not None and seqs[0] <= self._last_promoted_seq:
                raise ValueError(
                    f"Out-of-order promotion: seq {seqs[0]} after "
                    f"already promoted seq {self._last_promoted_seq}"
                )
            self._last_promoted_seq = seqs[-1]

            digest = await self._compressor.compress(turns)
            level0 = self._levels[0]
            text = f"{level0.text}\n{digest.text}".strip() if level0.text else digest.text
            self._levels[0] = self._make_level(
                0,
                text,
                _merge_range(level0.covered_range, (seqs[0], seqs[-1])),
                level0.unverified or digest.unverified,
            )
            logger.info(
                f"Promoted turns {seqs[0]}-{seqs[-1]} into level 0 "
                f"({self._levels[0].approx_tokens} tokens)"
            )

            await self._cascade()

        logger.debug(f"Summary store total: {self.total_tokens}/{self.bound} tokens")

    async def _cascade(self) -> None:
        top = len(self._levels) - 1
        for i, threshold in enumerate(self._config.level_thresholds):
            level = self._levels[i]
            if level.approx_tokens <= threshold:
                continue

            if i < top:
                older = self._levels[i + 1]
                result = await self._compressor.compress_text([older.text, level.text])
                self._levels[i + 1] = self._make_level(
                    i + 1,
                    result.text,
                    _merge_range(older.covered_range, level.covered_range),
                    older.unverified or level.unverified or result.unverified,
                )
                self._levels[i] = SummaryLevel(level_index=i)
                logger.info(
                    f"Cascaded level {i} into level {i + 1} "
                    f"({self._levels[i + 1].approx_tokens} tokens)"
                )
            else:
                result = await self._compressor.compress_text([level.text])
                text = self._counter.fit_text(result.text, threshold)
                self._levels[i] = self._make_level(
                    i,
                    text,
                    level.covered_range,
                    level.unverified or result.unverified,
                )
                logger.info(
                    f"Re-summarized top level {i} in place "
                    f"({self._levels[i].approx_tokens}/{threshold} tokens)"
                )

    def _make_level(
        self,
        index: int,
        text: str,
        covered_range: tuple[int, int] | None,
        unverified: bool,
    ) -> SummaryLevel:
        return SummaryLevel(
            level_index=index,
            text=text,
            covered_range=covered_range,
            approx_tokens=self._counter.count_or_estimate(text),
            unverified=unverified,
        )

    def render(self) -> str:
        """Concatenate non-empty levels from oldest to newest with labels."""
        top = len(self._levels) - 1
        parts = []
        for level in reversed(self._levels):
            if level.is_empty:
                continue
            if level.level_index == 0:
                label = NEWEST_LABEL
            elif level.level_index == top:
                label = OLDEST_LABEL
            else:
                label = MIDDLE_LABEL
            parts.append(f"{label}\n{level.text}")
        return "\n\n".join(parts)

    def clear(self) -> None:
        self._levels = [SummaryLevel(level_index=i) for i in range(self._config.levels)]
        self._last_promoted_seq = None
