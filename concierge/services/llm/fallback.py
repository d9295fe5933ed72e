"""Chains two providers so one vendor outage does not silence the assistant."""

import structlog

from concierge.services.llm.base import LLMProvider, LLMResponse

logger = structlog.get_logger(__name__)


class FallbackLLMProvider(LLMProvider):
    """Primary first, secondary on any error.

    A secondary failure propagates; LLMAssistant turns it into
    AssistantUnavailableError and the customer gets the fallback reply.
    """

    def __init__(self, primary: LLMProvider, secondary: LLMProvider) -> None:
        self._primary = primary
        self._secondary = secondary
        logger.info(
            "fallback_provider_initialized",
            primary=type(primary).__name__,
            secondary=type(secondary).__name__,
        )

    async def generate(
        self,
        prompt: str,
        system_prompt: str,
        max_tokens: int = 600,
        temperature: float = 0.3,
    ) -> LLMResponse:
        try:
            return await self._primary.generate(
                prompt, system_prompt, max_tokens, temperature
            )
        except Exception as primary_err:
            logger.warning(
                "primary_generate_failed_falling_back",
                primary=type(self._primary).__name__,
                error=str(primary_err),
            )
            return await self._secondary.generate(
                prompt, system_prompt, max_tokens, temperature
            )
