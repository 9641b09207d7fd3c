"""Core data models for the hybrid memory system."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return uuid4().hex


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Turn(BaseModel):
    """A single conversation message. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    seq: int  # strictly increasing within a session
    timestamp: datetime = Field(default_factory=_utcnow)
    importance: int | None = None

    def with_importance(self, score: int) -> "Turn":
        """Return a copy of this turn carrying an importance score."""
        return self.model_copy(update={"importance": score})

    def to_chat_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class SummaryLevel(BaseModel):
    """One level of the hierarchical summary store."""

    level_index: int
    text: str = ""
    covered_range: tuple[int, int] | None = None  # (first_seq, last_seq)
    approx_tokens: int = 0
    unverified: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


class MemoryEntry(BaseModel):
    """A long-term memory record for one turn in a user's partition."""

    id: str = Field(default_factory=_uuid)
    user_id: str
    session_id: str | None = None
    seq: int
    role: Role
    content: str
    embedding: list[float] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utcnow)
    similarity: float | None = None  # set on retrieval


class ProfileFact(BaseModel):
    """A single statement known about a user."""

    id: str = Field(default_factory=_uuid)
    attribute: str | None = None
    statement: str
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    embedding: list[float] | None = None


class UserProfile(BaseModel):
    """Accumulated, deduplicated facts about a user."""

    user_id: str
    facts: list[ProfileFact] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=_utcnow)

    def format_for_context(self) -> str:
        """Render the facts as a short bullet list for prompt injection."""
        return "\n".join(f"- {fact.statement}" for fact in self.facts)


class LayerAllocation(BaseModel):
    """Token allocation per context layer."""

    profile: int = 0
    retrieved: int = 0
    summary: int = 0
    window: int = 0


class ContextBudget(BaseModel):
    """Per-request budget. Recomputed from configuration, never persisted."""

    total_limit: int
    layer_allocations: LayerAllocation = Field(default_factory=LayerAllocation)


class GenerationResult(BaseModel):
    """Result of a call to the LLM generation collaborator."""

    content: str
    input_tokens: int = 0
    output_tokens: int = 0


class Diagnostics(BaseModel):
    """Observability snapshot for one session."""

    session_id: str
    window_tokens: int = 0
    summary_tokens: int = 0
    retrieved_count: int = 0
    budget_exceeded: bool = False
    window_over_budget: bool = False
    degraded: bool = False
    turn_count: int = 0
    promotions: int = 0


class ConsolidationConflict(BaseModel):
    """Audit record for a profile fact replaced by a newer one."""

    user_id: str
    attribute: str | None
    superseded: str
    replacement: str
    resolved_at: datetime = Field(default_factory=_utcnow)


class MergeReport(BaseModel):
    """Outcome of merging extracted facts into a profile."""

    added: int = 0
    duplicates: int = 0
    superseded: int = 0
    dropped: int = 0
    conflicts: list[ConsolidationConflict] = Field(default_factory=list)


@dataclass(frozen=True)
class Parsed:
    """Delegated output parsed successfully."""

    value: Any


@dataclass(frozen=True)
class Fallback:
    """Delegated output unusable; the caller applies its default."""

    reason: str


ParseOutcome = Parsed | Fallback
