"""LLM client for grounded answers with OpenAI integration.

Security: Reads API key from settings only, never hardcoded.
Provides a deterministic client when no key is present for testing.
"""

import logging
from typing import Protocol

from openai import AsyncOpenAI, OpenAIError

from backend.pdfrag.config import Settings, get_settings
from backend.pdfrag.errors import GenerationError, MissingCredentialsError
from backend.pdfrag.models.answer import ChatTurn, GenerationConfig
from backend.pdfrag.utils.retry import as_transient

logger = logging.getLogger(__name__)


class LLMClient(Protocol):
    """Protocol for LLM client implementations."""

    async def generate(
        self,
        *,
        prompt: str,
        history: list[ChatTurn],
        config: GenerationConfig,
        system_instruction: str,
    ) -> str:
        """Generate a reply to prompt given prior turns.

        Args:
            prompt: User message with context and question
            history: Prior user/assistant turns, oldest first
            config: Sampling parameters and model override
            system_instruction: System message

        Returns:
            Raw model text
        """
        ...


class DeterministicStubClient:
    """Deterministic stub client for testing (no API key required)."""

    async def generate(
        self,
        *,
        prompt: str,
        history: list[ChatTurn],
        config: GenerationConfig,
        system_instruction: str,
    ) -> str:
        """Generate deterministic stub answer."""
        return (
            "This is a stub answer generated without an LLM.\n\n"
            f"It saw {len(prompt)} prompt characters and {len(history)} prior turn(s) "
            f"in {config.response_style} style."
        )


class OpenAIClient:
    """OpenAI chat completions client."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini"):
        """Initialize OpenAI client.

        Args:
            api_key: OpenAI API key (read from environment)
            model: Default model name, overridable per request
        """
        if not api_key:
            raise MissingCredentialsError("OpenAI API key is empty", stage="generation")
        self.client = AsyncOpenAI(api_key=api_key)
        self.model = model

    async def generate(
        self,
        *,
        prompt: str,
        history: list[ChatTurn],
        config: GenerationConfig,
        system_instruction: str,
    ) -> str:
        """Generate answer using the OpenAI API."""
        messages = [{"role": "system", "content": system_instruction}]
        messages.extend({"role": turn.role, "content": turn.content} for turn in history)
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self.client.chat.completions.create(
                model=config.model or self.model,
                messages=messages,  # type: ignore[arg-type]
                temperature=config.temperature,
                top_p=config.top_p,
                max_tokens=config.max_output_tokens,
            )
        except OpenAIError as e:
            transient = as_transient(e, stage="generation")
            if transient is e:
                raise
            raise transient from e
        text = response.choices[0].message.content or ""
        if not text.strip():
            raise GenerationError("model returned an empty response", stage="generation")
        return text


async def get_llm_client(settings: Settings | None = None) -> LLMClient:
    """Factory function to get appropriate LLM client based on config.

    Returns:
        OpenAIClient if API key is configured, DeterministicStubClient otherwise
    """
    settings = settings or get_settings()
    api_key = settings.openai_api_key

    if api_key and api_key.get_secret_value():
        logger.info("Using OpenAI client for answers")
        return OpenAIClient(
            api_key=api_key.get_secret_value(),
            model=settings.openai_model,
        )
    logger.warning("No OpenAI API key configured, using deterministic stub client")
    return DeterministicStubClient()
