"""Answer generator - prompt, LLM call, thinking split and references."""

import logging
from collections.abc import Sequence

from backend.pdfrag.citations.assembler import ensure_references
from backend.pdfrag.errors import (
    GenerationError,
    MissingCredentialsError,
    NoDocumentsProcessedError,
)
from backend.pdfrag.llm.classifiers import HeuristicClassifier, ResponseClassifier
from backend.pdfrag.llm.client import LLMClient
from backend.pdfrag.llm.prompts import (
    HISTORY_LIMIT,
    build_system_prompt,
    build_user_prompt,
    format_history,
)
from backend.pdfrag.models.answer import (
    AssembledContext,
    ChatTurn,
    GeneratedAnswer,
    GenerationConfig,
)
from backend.pdfrag.utils.retry import RetryPolicy
from backend.pdfrag.vectorstore.memory import InMemoryVectorStore

logger = logging.getLogger(__name__)


class AnswerGenerator:
    """Calls the LLM with retrieved context and post-processes its answer."""

    def __init__(
        self,
        llm: LLMClient,
        store: InMemoryVectorStore,
        *,
        classifier: ResponseClassifier | None = None,
        retry: RetryPolicy | None = None,
        history_limit: int = HISTORY_LIMIT,
    ) -> None:
        self._llm = llm
        self._store = store
        self._classifier = classifier or HeuristicClassifier()
        self._retry = retry or RetryPolicy(max_attempts=3)
        self.history_limit = history_limit

    async def generate(
        self,
        query: str,
        context: AssembledContext,
        history: Sequence[ChatTurn] = (),
        config: GenerationConfig | None = None,
    ) -> GeneratedAnswer:
        """Generate a cited answer.

        Args:
            query: User question
            context: Assembled context and citations
            history: Prior conversation turns, oldest first
            config: Generation settings

        Returns:
            GeneratedAnswer with a references section guaranteed when citations exist

        Raises:
            NoDocumentsProcessedError: If no documents are loaded; the LLM is not called
            GenerationError: If the LLM call fails, carrying the underlying message
            MissingCredentialsError: If the provider has no credentials
        """
        if self._store.is_empty:
            raise NoDocumentsProcessedError("vector store is empty", stage="generation")

        config = config or GenerationConfig()
        classification = self._classifier.classify_query(query)
        system_instruction = build_system_prompt(
            style=config.response_style,
            show_thinking=config.show_thinking_process,
            is_math=classification.is_math,
        )
        prompt = build_user_prompt(query, context.text)
        turns = format_history(history, self.history_limit)

        try:
            raw = await self._retry.call(
                lambda: self._llm.generate(
                    prompt=prompt,
                    history=turns,
                    config=config,
                    system_instruction=system_instruction,
                ),
                operation="generate",
            )
        except (GenerationError, MissingCredentialsError):
            raise
        except Exception as e:
            logger.error(f"LLM call failed: {e}")
            raise GenerationError(str(e), stage="generation") from e

        if config.show_thinking_process:
            split = self._classifier.extract_thinking_block(raw)
            answer, thinking = split.answer, split.thinking
        else:
            answer, thinking = raw.strip(), None

        return GeneratedAnswer(
            text=ensure_references(answer, context.citations),
            thinking_process=thinking,
            citations=list(context.citations),
        )
