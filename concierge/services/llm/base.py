"""Text generation backends behind LLMAssistant.

main.py builds the provider chain once at startup; the assistant only
sees this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class LLMResponse:
    """Generated text plus token counts for usage logging."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class LLMProvider(ABC):
    """One model endpoint that turns a prompt into text."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        system_prompt: str,
        max_tokens: int = 600,
        temperature: float = 0.3,
    ) -> LLMResponse:
        """Return one complete reply for ``prompt``.

        The assistant puts its ACTION/REPLY line format in ``system_prompt``
        and parses the text itself. Implementations raise RuntimeError on
        timeout or API error.
        """
        ...
