"""Importance scoring strategies.

Two interchangeable scorers share the ``score(turn)`` capability:

* :class:`HeuristicImportanceScorer` -- regex rule engine, in-process.
* :class:`LLMImportanceScorer` -- asks the LLM collaborator for a 1-10
  rating and treats the reply as untrusted text.

Scoring is best-effort. Neither scorer raises; failures collapse to the
neutral score.
"""

from __future__ import annotations

import asyncio
import re

from loguru import logger

from .config import ImportanceConfig
from .interfaces import LLMClient
from .models import Fallback, ParseOutcome, Parsed, Turn

MIN_SCORE = 1
MAX_SCORE = 10
NEUTRAL_SCORE = 5

IMPORTANCE_PROMPT = """\
Rate how important the following chat message is to remember for the rest \
of the conversation, on a scale from 1 (throwaway small talk) to 10 \
(critical: identifiers, credentials, deadlines, commitments).

Reply with a single integer and nothing else.

<message role="{role}">
{content}
</message>"""

_NUMBER_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")


def clamp_score(value: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, value))


def parse_score(raw: str) -> ParseOutcome:
    """Parse a model's rating reply.

    The first number in the text is taken. Anything that is not a whole
    number in [1, 10] is a :class:`Fallback`.
    """
    if not raw or not raw.strip():
        return Fallback("empty response")

    match = _NUMBER_PATTERN.search(raw)
    if match is None:
        return Fallback(f"no number in response: {raw[:50]!r}")

    number = float(match.group(0))
    if not number.is_integer():
        return Fallback(f"non-integer rating: {match.group(0)}")

    value = int(number)
    if value < MIN_SCORE or value > MAX_SCORE:
        return Fallback(f"rating out of range: {value}")
    return Parsed(value)


class HeuristicImportanceScorer:
    """Rule-based scorer.

    Base score, +2 per high-importance pattern match, -2 per low-importance
    match, +1 for long messages, clamped to [1, 10].
    """

    def __init__(self, config: ImportanceConfig | None = None):
        self._config = config or ImportanceConfig()
        self._high = [re.compile(p, re.IGNORECASE) for p in self._config.high_patterns]
        self._low = [re.compile(p, re.IGNORECASE) for p in self._config.low_patterns]

    def score_text(self, text: str) -> int:
        value = self._config.base_score
        for pattern in self._high:
            value += 2 * len(pattern.findall(text))
        for pattern in self._low:
            value -= 2 * len(pattern.findall(text))
        if len(text.split()) > self._config.long_message_words:
            value += 1
        return clamp_score(value)

    async def score(self, turn: Turn) -> int:
        return self.score_text(turn.content)


class LLMImportanceScorer:
    """Delegates the rating to the LLM collaborator with a hard timeout."""

    def __init__(
        self,
        llm: LLMClient,
        config: ImportanceConfig | None = None,
        model_name: str | None = None,
    ):
        self._llm = llm
        self._config = config or ImportanceConfig()
        self._model_name = model_name

    async def score(self, turn: Turn) -> int:
        messages = [
            {
                "role": "user",
                "content": IMPORTANCE_PROMPT.format(
                    role=turn.role.value, content=turn.content
                ),
            }
        ]
        try:
            result = await asyncio.wait_for(
                self._llm.generate(
                    messages,
                    model_name=self._model_name,
                    max_output_tokens=4,
                    temperature=0.0,
                ),
                timeout=self._config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Importance scoring timed out after {self._config.timeout_seconds}s "
                f"(seq={turn.seq}); using neutral score"
            )
            return NEUTRAL_SCORE
        except Exception as e:
            logger.warning(f"Importance scoring failed (seq={turn.seq}): {e}")
            return NEUTRAL_SCORE

        outcome = parse_score(result.content)
        if isinstance(outcome, Parsed):
            return outcome.value

        logger.warning(f"Unusable importance rating (seq={turn.seq}): {outcome.reason}")
        return NEUTRAL_SCORE


def create_importance_scorer(
    config: ImportanceConfig,
    llm: LLMClient | None = None,
    model_name: str | None = None,
) -> HeuristicImportanceScorer | LLMImportanceScorer:
    """Build the scorer named by ``config.strategy``."""
    if config.strategy == "llm":
        if llm is None:
            logger.warning("LLM importance scoring requested without an LLM; using heuristic")
            return HeuristicImportanceScorer(config)
        return LLMImportanceScorer(llm, config, model_name=model_name)
    return HeuristicImportanceScorer(config)
