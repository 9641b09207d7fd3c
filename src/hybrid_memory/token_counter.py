"""Token counting with tiktoken and a character-based fallback."""

from __future__ import annotations

import math
from functools import lru_cache

import tiktoken
from loguru import logger

from .exceptions import UnsupportedModelError

ESTIMATE_MODEL = "estimate"

# Checked in order after tiktoken's own model table.
_FAMILY_ENCODINGS: list[tuple[str, str]] = [
    ("gpt-4o", "o200k_base"),
    ("gpt-4.1", "o200k_base"),
    ("o1", "o200k_base"),
    ("o3", "o200k_base"),
    ("o4", "o200k_base"),
    ("gpt-4", "cl100k_base"),
    ("gpt-3.5", "cl100k_base"),
    ("text-embedding", "cl100k_base"),
]


@lru_cache(maxsize=32)
def _encoding_name_for(model_name: str) -> str:
    try:
        return tiktoken.encoding_name_for_model(model_name)
    except KeyError:
        pass
    for prefix, encoding_name in _FAMILY_ENCODINGS:
        if model_name.startswith(prefix):
            return encoding_name
    raise UnsupportedModelError(model_name, "no known tokenizer")


@lru_cache(maxsize=8)
def _load_encoding(encoding_name: str) -> tiktoken.Encoding:
    return tiktoken.get_encoding(encoding_name)


@lru_cache(maxsize=8192)
def _count_cached(encoding_name: str, text: str) -> int:
    return len(_load_encoding(encoding_name).encode(text, disallowed_special=()))


def estimate_tokens(text: str) -> int:
    """Approximate token count: one token per four characters."""
    return math.ceil(len(text) / 4)


class TokenCounter:
    """Counts tokens for budget management.

    ``count`` is strict and raises :class:`UnsupportedModelError` for model
    names it cannot map to an encoding. ``count_or_estimate`` never raises and
    is what the rest of the memory system uses.
    """

    def __init__(self, model: str = "gpt-4o-mini"):
        self._model = model
        self._warned: set[str] = set()

    @property
    def model(self) -> str:
        return self._model

    def count(self, text: str, model_name: str | None = None) -> int:
        """Count tokens in ``text`` for ``model_name`` (defaults to this counter's model)."""
        name = model_name or self._model
        if not text:
            return 0
        if name == ESTIMATE_MODEL:
            return estimate_tokens(text)

        encoding_name = _encoding_name_for(name)
        try:
            return _count_cached(encoding_name, text)
        except UnsupportedModelError:
            raise
        except Exception as e:
            # tiktoken downloads encodings lazily; treat load failures as unsupported
            raise UnsupportedModelError(name, f"encoding {encoding_name} unavailable: {e}") from e

    def count_or_estimate(self, text: str, model_name: str | None = None) -> int:
        name = model_name or self._model
        try:
            return self.count(text, name)
        except UnsupportedModelError as e:
            if name not in self._warned:
                self._warned.add(name)
                logger.warning(f"{e}; using character-based estimate")
            return estimate_tokens(text)

    def count_messages(self, messages: list[dict]) -> int:
        """Count total tokens in a list of chat messages."""
        total = 0
        for msg in messages:
            # Per-message overhead (role, formatting)
            total += 4
            total += self.count_or_estimate(msg.get("content", "") or "")
            if msg.get("name"):
                total += self.count_or_estimate(msg["name"])
        total += 2  # Priming tokens
        return total

    def fit_text(self, text: str, max_tokens: int) -> str:
        """Truncate text from the end until it fits ``max_tokens``."""
        if not text.strip() or max_tokens <= 0:
            return ""

        current_tokens = self.count_or_estimate(text)
        if current_tokens <= max_tokens:
            return text

        char_ratio = len(text) / max(current_tokens, 1)
        fitted_text = text[: int(max_tokens * char_ratio * 0.9)]  # 90% safety margin
        fitted_tokens = self.count_or_estimate(fitted_text)

        while fitted_tokens > max_tokens and fitted_text:
            fitted_text = fitted_text[: int(len(fitted_text) * 0.9)]
            fitted_tokens = self.count_or_estimate(fitted_text)

        logger.debug(
            f"Fitted text from {current_tokens} to {fitted_tokens} tokens "
            f"(budget: {max_tokens})"
        )
        return fitted_text
