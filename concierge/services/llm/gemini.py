"""Gemini backend, used when Cerebras fails."""

import google.generativeai as genai
import structlog

from concierge.services.llm.base import LLMProvider, LLMResponse

logger = structlog.get_logger(__name__)

_TIMEOUT_SECONDS = 10


class GeminiProvider(LLMProvider):
    """Gemini through google-generativeai, with a ten-second cap."""

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash") -> None:
        genai.configure(api_key=api_key)
        self._model_name = model
        logger.info("gemini_provider_initialized", model=model)

    def _build_model(self, system_prompt: str) -> genai.GenerativeModel:
        return genai.GenerativeModel(
            model_name=self._model_name,
            system_instruction=system_prompt or None,
        )

    @staticmethod
    def _extract_text(response) -> str:
        """Read the response text without tripping on blocked candidates.

        ``response.text`` raises when Gemini returns no valid Part
        (safety block, empty candidates).
        """
        try:
            return response.text
        except (ValueError, AttributeError):
            pass
        text = ""
        if response.candidates:
            try:
                for part in response.candidates[0].content.parts:
                    if getattr(part, "text", None):
                        text += part.text
            except (IndexError, AttributeError):
                return ""
        return text

    async def generate(
        self,
        prompt: str,
        system_prompt: str,
        max_tokens: int = 600,
        temperature: float = 0.3,
    ) -> LLMResponse:
        model = self._build_model(system_prompt)
        generation_config = genai.GenerationConfig(
            max_output_tokens=max_tokens,
            temperature=temperature,
        )
        try:
            response = await model.generate_content_async(
                prompt,
                generation_config=generation_config,
                request_options={"timeout": _TIMEOUT_SECONDS},
            )
        except Exception as e:
            logger.error(
                "gemini_generate_failed",
                error=str(e),
                model=self._model_name,
                prompt_len=len(prompt),
            )
            raise RuntimeError(f"Gemini generate failed: {e}") from e

        text = self._extract_text(response)
        if not text:
            logger.warning("gemini_empty_response", prompt_len=len(prompt))
        usage = response.usage_metadata
        result = LLMResponse(
            text=text,
            input_tokens=getattr(usage, "prompt_token_count", 0) or 0,
            output_tokens=getattr(usage, "candidates_token_count", 0) or 0,
        )
        logger.debug(
            "gemini_generate_ok",
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )
        return result
