"""Embedding providers.

Security: Reads API key from settings only, never hardcoded.
Provides a deterministic provider when no key is present for testing.
"""

import hashlib
import logging
import math
import re
from typing import Protocol

from openai import AsyncOpenAI, OpenAIError

from backend.pdfrag.config import Settings, get_settings
from backend.pdfrag.errors import MissingCredentialsError
from backend.pdfrag.utils.retry import as_transient

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"\w+", re.UNICODE)


class EmbeddingProvider(Protocol):
    """Protocol for embedding model backends."""

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query string."""
        ...

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts in one request, preserving order."""
        ...


class DeterministicEmbeddingProvider:
    """Hashed bag-of-words vectors (no API key required).

    Texts sharing words get positive cosine similarity, which is enough for
    tests and offline runs.
    """

    def __init__(self, dimension: int = 1536) -> None:
        self.dimension = dimension

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            slot = int.from_bytes(digest[:4], "big") % self.dimension
            vector[slot] += 1.0 if digest[4] % 2 == 0 else -1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm else vector

    async def embed_query(self, text: str) -> list[float]:
        return self._vector(text)

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._vector(text) for text in texts]


class OpenAIEmbeddingProvider:
    """OpenAI embeddings endpoint."""

    def __init__(self, api_key: str, model: str = "text-embedding-3-small"):
        """Initialize OpenAI embeddings client.

        Args:
            api_key: OpenAI API key (read from environment)
            model: Embedding model name
        """
        if not api_key:
            raise MissingCredentialsError("OpenAI API key is empty", stage="embedding")
        self.client = AsyncOpenAI(api_key=api_key)
        self.model = model

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed_documents([text])
        return vectors[0]

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        try:
            response = await self.client.embeddings.create(model=self.model, input=texts)
        except OpenAIError as e:
            transient = as_transient(e, stage="embedding")
            if transient is e:
                raise
            raise transient from e
        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]


def get_embedding_provider(settings: Settings | None = None) -> EmbeddingProvider:
    """Pick the embedding provider based on config.

    Returns:
        OpenAIEmbeddingProvider if API key is configured,
        DeterministicEmbeddingProvider otherwise
    """
    settings = settings or get_settings()
    api_key = settings.openai_api_key

    if api_key and api_key.get_secret_value():
        logger.info("Using OpenAI embedding provider")
        return OpenAIEmbeddingProvider(
            api_key=api_key.get_secret_value(),
            model=settings.embedding_model,
        )
    logger.warning("No OpenAI API key configured, using deterministic embedding provider")
    return DeterministicEmbeddingProvider(dimension=settings.embedding_dimension)
