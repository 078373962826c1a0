"""Embedding gateway - retries, adaptive batching and dimension normalization.

Individual failures never abort a batch: inputs that exhaust their retries get a
zero vector and the degradation is logged and counted. Non-retriable provider
errors are fatal and propagate as EmbeddingProviderError.
"""

import asyncio
import math
import random
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from backend.pdfrag.config import Settings
from backend.pdfrag.embeddings.provider import EmbeddingProvider
from backend.pdfrag.errors import (
    EmbeddingProviderError,
    IngestionCancelledError,
    RagError,
    RetryExhaustedError,
)
from backend.pdfrag.utils.logging import StructuredRagLogger
from backend.pdfrag.utils.metrics import RagMetrics
from backend.pdfrag.utils.retry import RetryPolicy


@dataclass
class CancelToken:
    """Token for cooperative cancellation between batches."""

    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True

    def throw_if_cancelled(self) -> None:
        """Raise IngestionCancelledError if cancelled."""
        if self.cancelled:
            raise IngestionCancelledError("ingestion cancelled", stage="embedding")


@dataclass(frozen=True)
class BatchPolicy:
    """Adaptive batch sizing and inter-batch throttling."""

    initial_batch_size: int = 10
    min_batch_size: int = 2
    growth_after: int = 3
    delay_min_ms: int = 800
    delay_max_ms: int = 1200

    @classmethod
    def from_settings(cls, settings: Settings) -> "BatchPolicy":
        return cls(
            initial_batch_size=settings.embedding_batch_size,
            min_batch_size=settings.embedding_min_batch_size,
            growth_after=settings.embedding_growth_after,
            delay_min_ms=settings.inter_batch_delay_min_ms,
            delay_max_ms=settings.inter_batch_delay_max_ms,
        )


def is_zero_vector(vector: Sequence[float]) -> bool:
    return not any(vector)


def fit_dimension(vector: Sequence[float], dimension: int) -> tuple[list[float], str | None]:
    """Truncate or zero-pad to dimension, zeroing non-finite components.

    Returns:
        (vector, adjustment) where adjustment is "pad", "truncate" or None
    """
    values = [float(v) if math.isfinite(v) else 0.0 for v in vector]
    native = len(values)
    if native == dimension:
        return values, None
    if native > dimension:
        return values[:dimension], "truncate"
    return values + [0.0] * (dimension - native), "pad"


class EmbeddingGateway:
    """Turns text into vectors of exactly ``dimension`` components."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        dimension: int = 1536,
        retry: RetryPolicy | None = None,
        query_retry: RetryPolicy | None = None,
        batch_policy: BatchPolicy | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
        metrics: RagMetrics | None = None,
        logger: StructuredRagLogger | None = None,
    ) -> None:
        self._provider = provider
        self.dimension = dimension
        self._metrics = metrics or RagMetrics()
        self._logger = logger or StructuredRagLogger()
        self._retry = retry or RetryPolicy(metrics=self._metrics, logger=self._logger)
        self._query_retry = query_retry or self._retry
        self.batch_policy = batch_policy or BatchPolicy()
        self._sleep = sleep_fn or asyncio.sleep
        self._rng = rng or random.Random()
        self._reported_dimensions: set[int] = set()

    def zero_vector(self) -> list[float]:
        return [0.0] * self.dimension

    def normalize(self, vector: Sequence[float]) -> list[float]:
        """Force vector to exactly ``dimension`` finite components."""
        values, kind = fit_dimension(vector, self.dimension)
        if kind is None:
            return values

        native = len(vector)
        self._metrics.inc_dimension_adjustment(kind)
        if native not in self._reported_dimensions:
            self._reported_dimensions.add(native)
            self._logger.log_degraded(
                "embedding",
                f"dimension {native} != {self.dimension}, applying {kind}",
                native_dimension=native,
                target_dimension=self.dimension,
            )
        return values

    def _fallback(self, error: RetryExhaustedError) -> list[float]:
        self._metrics.inc_embedding_fallback()
        self._logger.log_degraded(
            "embedding", "retries exhausted, using zero vector", attempts=error.attempts
        )
        return self.zero_vector()

    async def embed(self, text: str) -> list[float]:
        """Embed one query string.

        Returns a zero vector if the provider keeps failing transiently.

        Raises:
            EmbeddingProviderError: On non-retriable provider errors
        """
        try:
            vector = await self._query_retry.call(
                lambda: self._provider.embed_query(text), operation="embed_query"
            )
        except RetryExhaustedError as e:
            return self._fallback(e)
        except RagError:
            raise
        except Exception as e:
            raise EmbeddingProviderError(str(e), stage="embedding") from e
        return self.normalize(vector)

    async def _embed_one(self, text: str) -> list[float]:
        try:
            vectors = await self._retry.call(
                lambda: self._provider.embed_documents([text]), operation="embed_document"
            )
        except RetryExhaustedError as e:
            return self._fallback(e)
        except RagError:
            raise
        except Exception as e:
            raise EmbeddingProviderError(str(e), stage="embedding") from e
        return self.normalize(vectors[0])

    def _inter_batch_delay_ms(self, policy: BatchPolicy, batch_len: int) -> float:
        base = self._rng.uniform(policy.delay_min_ms, policy.delay_max_ms)
        return base * batch_len / policy.initial_batch_size

    async def embed_batch(
        self,
        texts: Sequence[str],
        batch_policy: BatchPolicy | None = None,
        *,
        cancel_token: CancelToken | None = None,
    ) -> list[list[float]]:
        """Embed texts in adaptive batches, preserving input order.

        Batch size halves after a failed batch (floor ``min_batch_size``) and
        grows by one after ``growth_after`` consecutive successes (ceiling
        ``initial_batch_size``). Failed batches are re-queued; a batch already at
        the floor is embedded item by item instead.

        Raises:
            EmbeddingProviderError: On non-retriable provider errors
            IngestionCancelledError: If cancel_token is cancelled between batches
        """
        policy = batch_policy or self.batch_policy
        results: list[list[float] | None] = [None] * len(texts)
        pending: deque[int] = deque(range(len(texts)))
        batch_size = policy.initial_batch_size
        successes = 0

        while pending:
            if cancel_token is not None:
                cancel_token.throw_if_cancelled()

            batch = [pending.popleft() for _ in range(min(batch_size, len(pending)))]
            batch_texts = [texts[i] for i in batch]
            try:
                vectors = await self._retry.call(
                    lambda: self._provider.embed_documents(batch_texts),
                    operation="embed_batch",
                )
            except RetryExhaustedError:
                successes = 0
                if len(batch) <= policy.min_batch_size:
                    for i in batch:
                        results[i] = await self._embed_one(texts[i])
                else:
                    batch_size = max(policy.min_batch_size, batch_size // 2)
                    pending.extend(batch)
                    self._logger.log_degraded(
                        "embedding",
                        "batch failed, re-queued",
                        batch_len=len(batch),
                        next_batch_size=batch_size,
                    )
                continue
            except RagError:
                raise
            except Exception as e:
                raise EmbeddingProviderError(str(e), stage="embedding") from e

            if len(vectors) != len(batch):
                raise EmbeddingProviderError(
                    f"provider returned {len(vectors)} vectors for {len(batch)} inputs",
                    stage="embedding",
                )
            for i, vector in zip(batch, vectors):
                results[i] = self.normalize(vector)

            successes += 1
            if successes >= policy.growth_after and batch_size < policy.initial_batch_size:
                batch_size += 1
                successes = 0

            if pending:
                await self._sleep(self._inter_batch_delay_ms(policy, len(batch)) / 1000)

        return [vector if vector is not None else self.zero_vector() for vector in results]
