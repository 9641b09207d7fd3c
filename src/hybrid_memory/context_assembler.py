"""Context assembler.

Builds the final LLM prompt within the total token limit. Layers are placed
in a fixed precedence order inside the system content (system prompt,
profile, retrieved memories, rolling summary) followed by the verbatim window
as chat messages, most recent last. When the result exceeds the limit only
the verbatim window is pruned; the other layers are bounded by their own
allocations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from loguru import logger

from .config import ContextConfig
from .models import ContextBudget, LayerAllocation, MemoryEntry, Role, Turn
from .pruner import MESSAGE_OVERHEAD, SelectivePruner
from .token_counter import TokenCounter

PRIMING_TOKENS = 2

PROFILE_HEADER = "[What you know about the user]"
MEMORIES_HEADER = "[Relevant memories from earlier conversations]"
SUMMARY_HEADER = "[Conversation so far]"


@dataclass
class AssembledContext:
    """Result of context assembly with system content separated from messages."""

    system_content: str
    """Combined system prompt (persona + profile + memories + summary)."""

    messages: list[dict] = field(default_factory=list)
    """Verbatim window messages that survived pruning."""

    total_tokens: int = 0
    budget: ContextBudget | None = None
    budget_exceeded: bool = False
    pruned: list[Turn] = field(default_factory=list)
    kept_turns: list[Turn] = field(default_factory=list)
    retrieved_count: int = 0

    def to_messages(self) -> list[dict]:
        """Flat chat message list with the system content first."""
        return [{"role": Role.SYSTEM.value, "content": self.system_content}, *self.messages]


class ContextAssembler:
    """Assembles LLM context from the memory layers within the total limit."""

    def __init__(
        self,
        token_counter: TokenCounter,
        config: ContextConfig | None = None,
        pruner: SelectivePruner | None = None,
    ):
        self.token_counter = token_counter
        self.config = config or ContextConfig()
        self.pruner = pruner or SelectivePruner(token_counter)

        logger.debug(
            f"ContextAssembler initialized with {self.config.total_limit} tokens, "
            f"budget allocation: {self.config.allocation.model_dump()}"
        )

    def compute_budget(self) -> ContextBudget:
        """Per-request layer allocations. The window receives the remainder."""
        total = self.config.total_limit
        allocation = self.config.allocation
        profile = int(total * allocation.profile)
        retrieved = int(total * allocation.retrieved)
        summary = int(total * allocation.summary)
        return ContextBudget(
            total_limit=total,
            layer_allocations=LayerAllocation(
                profile=profile,
                retrieved=retrieved,
                summary=summary,
                window=total - profile - retrieved - summary,
            ),
        )

    def assemble(
        self,
        window_turns: Sequence[Turn],
        profile_text: str = "",
        retrieved: Sequence[MemoryEntry] = (),
        summary_text: str = "",
    ) -> AssembledContext:
        budget = self.compute_budget()
        allocations = budget.layer_allocations

        system_parts = [self.config.system_prompt]

        if profile_text.strip():
            profile_fitted = self.token_counter.fit_text(profile_text, allocations.profile)
            if profile_fitted:
                system_parts.append(f"\n\n{PROFILE_HEADER}\n{profile_fitted}")

        memories_text, retrieved_count = self._format_memories(
            retrieved, allocations.retrieved
        )
        if memories_text:
            system_parts.append(f"\n\n{MEMORIES_HEADER}\n{memories_text}")

        if summary_text.strip():
            summary_fitted = self._fit_tail(summary_text, allocations.summary)
            if summary_fitted:
                system_parts.append(f"\n\n{SUMMARY_HEADER}\n{summary_fitted}")

        system_content = "".join(system_parts)
        system_cost = self.token_counter.count_or_estimate(system_content) + MESSAGE_OVERHEAD

        turns = list(window_turns)
        window_budget = max(0, budget.total_limit - system_cost - PRIMING_TOKENS)
        prune_result = self.pruner.prune(turns, window_budget)

        messages = [turn.to_chat_message() for turn in prune_result.kept]
        total_tokens = system_cost + prune_result.total_tokens + PRIMING_TOKENS

        if prune_result.budget_exceeded:
            logger.warning(
                f"Context exceeds total limit even after pruning: "
                f"{total_tokens}/{budget.total_limit} tokens"
            )

        logger.info(
            f"Context assembled: system={system_cost}tok, "
            f"messages={len(messages)}({prune_result.total_tokens}tok), "
            f"pruned={len(prune_result.dropped)}, "
            f"total={total_tokens}/{budget.total_limit} "
            f"({total_tokens / budget.total_limit * 100:.1f}%)"
        )

        return AssembledContext(
            system_content=system_content,
            messages=messages,
            total_tokens=total_tokens,
            budget=budget,
            budget_exceeded=prune_result.budget_exceeded,
            pruned=prune_result.dropped,
            kept_turns=prune_result.kept,
            retrieved_count=retrieved_count,
        )

    def _fit_tail(self, text: str, max_tokens: int) -> str:
        """Trim text from the start so the most recent content survives."""
        if max_tokens <= 0:
            return ""
        if self.token_counter.count_or_estimate(text) <= max_tokens:
            return text

        fitted = text
        while fitted and self.token_counter.count_or_estimate(fitted) > max_tokens:
            fitted = fitted[len(fitted) // 10 + 1:]
        return fitted.lstrip()

    def _format_memories(
        self, memories: Sequence[MemoryEntry], max_tokens: int
    ) -> tuple[str, int]:
        """Format retrieved memories, most similar first, within budget.

        Returns:
            Formatted text and the number of memories included
        """
        if not memories or max_tokens <= 0:
            return "", 0

        formatted_parts = []
        current_tokens = 0

        for i, memory in enumerate(memories, 1):
            score = memory.similarity if memory.similarity is not None else 0.0
            memory_text = (
                f"[Memory {i}] ({memory.role.value}, score: {score:.2f})\n{memory.content}"
            )
            # Separator between parts counts against the budget too
            memory_tokens = self.token_counter.count_or_estimate(memory_text) + 1

            if current_tokens + memory_tokens > max_tokens:
                break
            formatted_parts.append(memory_text)
            current_tokens += memory_tokens

        result = "\n\n".join(formatted_parts)
        logger.debug(
            f"Formatted {len(formatted_parts)}/{len(memories)} memories, "
            f"{current_tokens}/{max_tokens} tokens"
        )
        return result, len(formatted_parts)
