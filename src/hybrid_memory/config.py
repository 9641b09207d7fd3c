"""Configuration models for the hybrid memory system."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

from .exceptions import ConfigError

DEFAULT_HIGH_PATTERNS: list[str] = [
    # identifiers and codes: ABC123, INV-2024-77, 4111-xxxx
    r"\b(?=[A-Za-z0-9-]*\d)(?=[A-Za-z0-9-]*[A-Za-z])[A-Za-z0-9][A-Za-z0-9-]{3,}\b",
    r"\b(?:account|username|user id|id number|order number|invoice|ticket|reference|passport|iban)\b",
    r"\b(?:deadline|due(?: date| by)?|expires?|no later than|by (?:monday|tuesday|wednesday|thursday|friday|saturday|sunday|tomorrow|tonight|end of (?:day|week|month)))\b",
    r"\b\d{1,2}[/.-]\d{1,2}(?:[/.-]\d{2,4})?\b",
    r"\b(?:password|passcode|pin|api key|secret|token|credential\w*|2fa|mfa|security|breach|vulnerab\w*|encrypt\w*)\b",
    r"(?m)^\s*(?:\d+[.)]|step \d+)",
    r"\b(?:remember|important|don't forget|do not forget|must)\b",
]

DEFAULT_LOW_PATTERNS: list[str] = [
    r"\b(?:hi|hello|hey|howdy|good (?:morning|afternoon|evening)|bye|goodbye)\b",
    r"\b(?:thanks|thank you|thx|ok|okay|got it|sure|cool|great|nice|sounds good)\b",
    r"\b(?:um+|uh+|hmm+|lol|haha+|yeah|yep|nope)\b",
]


class LLMConfig(BaseModel):
    """Generation collaborator settings."""

    model: str = "gpt-4o-mini"
    base_url: str | None = None
    api_key: str | None = None
    max_output_tokens: int = 512
    temperature: float = 0.7
    timeout_seconds: float = 30.0


class RetryConfig(BaseModel):
    """Retry policy for external collaborators (base delay doubles per attempt)."""

    attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0.0)


class WindowConfig(BaseModel):
    """Verbatim rolling window settings."""

    token_budget: int = Field(default=1500, gt=0)
    evict_fraction: float = Field(default=0.4, gt=0.0, le=1.0)


class SummaryConfig(BaseModel):
    """Hierarchical summary settings."""

    levels: int = Field(default=3, ge=1)
    level_thresholds: list[int] = Field(default_factory=lambda: [500, 350, 250])
    max_output_tokens: int = 150
    fallback_chars_per_turn: int = 80
    temperature: float = 0.0
    timeout_seconds: float = 20.0
    model: str | None = None  # defaults to llm.model

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "SummaryConfig":
        if len(self.level_thresholds) != self.levels:
            raise ValueError(
                f"level_thresholds must have one entry per level "
                f"(levels={self.levels}, got {len(self.level_thresholds)})"
            )
        if any(t <= 0 for t in self.level_thresholds):
            raise ValueError("level_thresholds must be positive")
        return self


class ImportanceConfig(BaseModel):
    """Importance scoring settings."""

    strategy: Literal["heuristic", "llm"] = "heuristic"
    base_score: int = 5
    high_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_HIGH_PATTERNS))
    low_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_LOW_PATTERNS))
    long_message_words: int = 30
    timeout_seconds: float = 5.0


class EmbeddingConfig(BaseModel):
    """Embedding collaborator settings."""

    provider: Literal["local", "hashing"] = "local"
    model: str = "all-MiniLM-L6-v2"
    dimension: int = 384
    trust_remote_code: bool = False
    timeout_seconds: float = 10.0


class RetrievalConfig(BaseModel):
    """Long-term memory retrieval settings."""

    top_k: int = 5
    min_similarity: float = 0.2


class ProfileConfig(BaseModel):
    """User profile extraction and consolidation settings."""

    extraction_interval: int = Field(default=10, ge=1)
    dedup_threshold: float = 0.9
    string_dedup_threshold: float = 0.85
    max_facts: int = 50
    timeout_seconds: float = 20.0


class BudgetAllocation(BaseModel):
    """Share of the total limit per layer. The window receives the remainder."""

    profile: float = 0.10
    retrieved: float = 0.20
    summary: float = 0.30

    @model_validator(mode="after")
    def _validate_sum(self) -> "BudgetAllocation":
        total = self.profile + self.retrieved + self.summary
        if total >= 1.0:
            raise ValueError(
                f"budget allocation must leave room for the verbatim window "
                f"(profile+retrieved+summary={total:.2f})"
            )
        return self


class ContextConfig(BaseModel):
    """Context assembly settings."""

    total_limit: int = Field(default=3000, gt=0)
    system_prompt: str = "You are a helpful assistant."
    allocation: BudgetAllocation = Field(default_factory=BudgetAllocation)
    fallback_reply: str = (
        "Sorry, I'm having trouble responding right now. Please try again in a moment."
    )


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    sqlite_db_path: str = "./memory/hybrid_memory.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class MemoryConfig(BaseModel):
    """Top-level configuration."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    window: WindowConfig = Field(default_factory=WindowConfig)
    summary: SummaryConfig = Field(default_factory=SummaryConfig)
    importance: ImportanceConfig = Field(default_factory=ImportanceConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    profile: ProfileConfig = Field(default_factory=ProfileConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def read_yaml(config_path: str | Path) -> dict[str, Any]:
    """Read a YAML file, substituting ``${ENV_VAR}`` references.

    Unset variables are left untouched.

    Raises:
        ConfigError: If the file is missing or is not valid YAML.
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}", path=str(path))

    content = path.read_text(encoding="utf-8")

    def replacer(match: re.Match[str]) -> str:
        return os.getenv(match.group(1), match.group(0))

    content = _ENV_PATTERN.sub(replacer, content)

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise ConfigError(f"Invalid YAML in {path}: {e}", path=str(path)) from e

    return data or {}


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        location = " -> ".join(str(loc) for loc in err["loc"])
        lines.append(f"  - '{location}': {err['msg']} (input: {err.get('input', 'N/A')!r})")
    return "\n".join(lines)


def load_config(config_path: str | Path) -> MemoryConfig:
    """Load and validate a :class:`MemoryConfig` from YAML.

    Raises:
        ConfigError: If the file cannot be read or fails validation.
    """
    data = read_yaml(config_path)
    try:
        config = MemoryConfig.model_validate(data)
    except ValidationError as e:
        message = _format_validation_error(e)
        logger.error(f"Invalid memory configuration in {config_path}:\n{message}")
        raise ConfigError(
            f"Invalid memory configuration:\n{message}", path=str(config_path)
        ) from e

    logger.debug(f"Loaded memory configuration from {config_path}")
    return config
