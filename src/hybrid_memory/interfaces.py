"""Capability interfaces for external collaborators and pluggable strategies."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import GenerationResult, Turn


@runtime_checkable
class LLMClient(Protocol):
    """Text generation collaborator. Raises ``GenerationError`` on failure."""

    async def generate(
        self,
        messages: list[dict],
        model_name: str | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ) -> GenerationResult:
        ...


@runtime_checkable
class Embedder(Protocol):
    """Embedding collaborator. Raises ``EmbeddingError`` on failure."""

    @property
    def dimension(self) -> int:
        ...

    async def embed(self, text: str) -> list[float]:
        ...


@runtime_checkable
class ImportanceScorer(Protocol):
    """Assigns a salience score in [1, 10] to one turn. Never raises."""

    async def score(self, turn: Turn) -> int:
        ...
