"""Cerebras backend, the primary provider.

Cerebras speaks the OpenAI chat completions protocol, so the OpenAI SDK is
pointed at its base URL. Calls are capped at ten seconds.
"""

import asyncio

import structlog
from openai import AsyncOpenAI

from concierge.services.llm.base import LLMProvider, LLMResponse

logger = structlog.get_logger(__name__)

_TIMEOUT_SECONDS = 10
_CEREBRAS_BASE_URL = "https://api.cerebras.ai/v1"


class CerebrasProvider(LLMProvider):
    """Cerebras chat completions via the OpenAI SDK."""

    def __init__(self, api_key: str, model: str = "llama3.1-8b") -> None:
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=_CEREBRAS_BASE_URL,
        )
        self._model = model
        logger.info("cerebras_provider_initialized", model=model)

    async def generate(
        self,
        prompt: str,
        system_prompt: str,
        max_tokens: int = 600,
        temperature: float = 0.3,
    ) -> LLMResponse:
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self._model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": prompt},
                    ],
                    max_tokens=max_tokens,
                    temperature=temperature,
                ),
                timeout=_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            logger.error("cerebras_generate_timeout", prompt_len=len(prompt))
            raise RuntimeError("Cerebras generate timed out") from e
        except Exception as e:
            logger.error(
                "cerebras_generate_failed",
                error=str(e),
                model=self._model,
                prompt_len=len(prompt),
            )
            raise RuntimeError(f"Cerebras generate failed: {e}") from e

        text = response.choices[0].message.content or ""
        usage = response.usage
        result = LLMResponse(
            text=text,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )
        logger.debug(
            "cerebras_generate_ok",
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            prompt_len=len(prompt),
        )
        return result
