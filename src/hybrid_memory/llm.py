"""OpenAI-compatible generation collaborator."""

from __future__ import annotations

import openai
from loguru import logger
from openai import AsyncOpenAI

from .config import LLMConfig
from .exceptions import GenerationError
from .models import GenerationResult


class OpenAICompatibleLLM:
    """Chat completions over any OpenAI-compatible endpoint.

    Provider errors are mapped to :class:`GenerationError`; rate limits,
    timeouts, connection failures and 5xx responses are marked transient so
    callers retry them.
    """

    def __init__(self, config: LLMConfig | None = None, client: AsyncOpenAI | None = None):
        self._config = config or LLMConfig()
        self._client = client or AsyncOpenAI(
            base_url=self._config.base_url,
            api_key=self._config.api_key,
            timeout=self._config.timeout_seconds,
            max_retries=0,  # retries are handled by the memory system
        )
        logger.debug(
            f"OpenAI client initialized (base_url: {self._config.base_url}, "
            f"model: {self._config.model})"
        )

    @property
    def model(self) -> str:
        return self._config.model

    async def generate(
        self,
        messages: list[dict],
        model_name: str | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ) -> GenerationResult:
        model = model_name or self._config.model
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_output_tokens or self._config.max_output_tokens,
                temperature=self._config.temperature if temperature is None else temperature,
            )
        except (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError) as e:
            raise GenerationError(f"{type(e).__name__}: {e}", transient=True) from e
        except openai.APIStatusError as e:
            raise GenerationError(
                f"LLM provider returned {e.status_code}: {e}",
                transient=e.status_code >= 500,
            ) from e
        except openai.OpenAIError as e:
            raise GenerationError(f"LLM call failed: {e}", transient=False) from e

        if not response.choices:
            raise GenerationError("LLM returned no choices", transient=True)

        content = response.choices[0].message.content or ""
        usage = response.usage
        return GenerationResult(
            content=content,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )
