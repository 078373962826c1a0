"""Retriever - multi-variant search over both vector tiers.

1. Search the in-memory store with each query variant until enough unique
   results accumulate.
2. If nothing matched, fall back to maximal marginal relevance on the first variant.
3. Deduplicate by content fingerprint.
4. If still below the minimum, supplement from the persistent store using the
   raw query's embedding.
5. Empty after all of that is an error, never an empty answer.
"""

import hashlib
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Literal
from uuid import UUID

from backend.pdfrag.config import Settings
from backend.pdfrag.db.context import RequestContext
from backend.pdfrag.db.repositories import ChunkStore
from backend.pdfrag.embeddings.gateway import EmbeddingGateway, is_zero_vector
from backend.pdfrag.errors import (
    EmptyQueryError,
    NoDocumentsProcessedError,
    NoRelevantInformationError,
    PersistentStoreUnavailableError,
)
from backend.pdfrag.models.retrieval import RetrievalResult, ScoredChunk, SearchMode
from backend.pdfrag.retrieval.planner import QueryPlanner
from backend.pdfrag.utils.logging import StructuredRagLogger
from backend.pdfrag.vectorstore.memory import InMemoryVectorStore


@dataclass(frozen=True)
class RetrievalConfig:
    """Retrieval thresholds and fallbacks."""

    k: int = 7
    target: int = 5
    minimum: int = 3
    mmr_k: int = 5
    mmr_fetch_k: int = 20
    mmr_lambda: float = 0.5
    persistent_limit: int = 10
    persistent_min_similarity: float = 0.5
    dedup_prefix_chars: int = 100
    dedup_strategy: Literal["prefix", "hash"] = "prefix"

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetrievalConfig":
        return cls(
            k=settings.retrieval_k,
            target=settings.retrieval_target,
            minimum=settings.retrieval_minimum,
            mmr_k=settings.mmr_k,
            mmr_fetch_k=settings.mmr_fetch_k,
            mmr_lambda=settings.mmr_lambda,
            persistent_limit=settings.persistent_search_limit,
            persistent_min_similarity=settings.persistent_min_similarity,
            dedup_prefix_chars=settings.dedup_prefix_chars,
            dedup_strategy=settings.dedup_strategy,
        )


def fingerprint(chunk: ScoredChunk, config: RetrievalConfig) -> str:
    """Dedup key: leading characters of the content, or a hash of all of it.

    The prefix key merges distinct chunks that share a long opening (repeated
    headers, boilerplate); the hash key only merges identical content.
    """
    content = chunk.content.strip()
    if config.dedup_strategy == "hash":
        return hashlib.sha256(content.encode("utf-8")).hexdigest()
    return content[: config.dedup_prefix_chars]


class _Accumulator:
    """Ordered unique results.

    A repeat replaces the kept entry only when it carries a better similarity
    score. Keyword pseudo-scores never replace a vector score and rank after
    every vector match.
    """

    def __init__(self, config: RetrievalConfig) -> None:
        self._config = config
        self._by_key: dict[str, ScoredChunk] = {}

    def __len__(self) -> int:
        return len(self._by_key)

    def add(self, chunks: Iterable[ScoredChunk]) -> None:
        for chunk in chunks:
            key = fingerprint(chunk, self._config)
            seen = self._by_key.get(key)
            if seen is None:
                self._by_key[key] = chunk
            elif chunk.mode == SearchMode.KEYWORD:
                continue
            elif seen.mode == SearchMode.KEYWORD or chunk.score > seen.score:
                self._by_key[key] = chunk

    def ranked(self) -> list[ScoredChunk]:
        # sorted() is stable: equal scores keep first-seen order
        return sorted(
            self._by_key.values(), key=lambda c: (c.mode == SearchMode.KEYWORD, -c.score)
        )


class Retriever:
    """Finds the chunks most relevant to a query."""

    def __init__(
        self,
        store: InMemoryVectorStore,
        gateway: EmbeddingGateway,
        *,
        chunk_store: ChunkStore | None = None,
        planner: QueryPlanner | None = None,
        config: RetrievalConfig | None = None,
        logger: StructuredRagLogger | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._chunk_store = chunk_store
        self._planner = planner or QueryPlanner()
        self.config = config or RetrievalConfig()
        self._logger = logger or StructuredRagLogger()

    async def retrieve(
        self,
        query: str,
        ctx: RequestContext,
        *,
        active_document_ids: Sequence[UUID] | None = None,
    ) -> RetrievalResult:
        """Retrieve deduplicated chunks ranked by similarity.

        Args:
            query: Raw user query
            ctx: Request context for the persistent store
            active_document_ids: Documents in scope; defaults to those in memory

        Returns:
            RetrievalResult with ranked chunks and the search modes used

        Raises:
            EmptyQueryError: If the query is blank
            NoDocumentsProcessedError: If the in-memory store is empty
            NoRelevantInformationError: If every tier came back empty
            PersistentStoreUnavailableError: If the persistent tier failed and
                memory had nothing either
        """
        if not query.strip():
            raise EmptyQueryError("empty query", stage="retrieval")
        if self._store.is_empty:
            raise NoDocumentsProcessedError("vector store is empty", stage="retrieval")

        config = self.config
        variants = self._planner.expand(query, self._store.document_titles)
        found = _Accumulator(config)
        modes: list[SearchMode] = []

        for variant in variants:
            found.add(await self._store.search(variant, k=config.k))
            if len(found) >= config.target:
                break
        if len(found):
            modes.append(SearchMode.MEMORY_SIMILARITY)

        if not len(found):
            diverse = await self._store.max_marginal_relevance_search(
                variants[0], k=config.mmr_k, fetch_k=config.mmr_fetch_k, lambda_mult=config.mmr_lambda
            )
            found.add(diverse)
            if diverse:
                modes.append(SearchMode.MEMORY_MMR)

        if len(found) < config.minimum and self._chunk_store is not None:
            await self._supplement(query, ctx, active_document_ids, found, modes)

        if not len(found):
            raise NoRelevantInformationError(
                f"no results for {len(variants)} query variants", stage="retrieval"
            )
        return RetrievalResult(chunks=found.ranked(), variants=variants, modes=modes)

    async def _supplement(
        self,
        query: str,
        ctx: RequestContext,
        active_document_ids: Sequence[UUID] | None,
        found: _Accumulator,
        modes: list[SearchMode],
    ) -> None:
        assert self._chunk_store is not None
        embedding = await self._gateway.embed(query)
        if active_document_ids is None:
            document_ids = sorted(self._store.document_ids, key=str)
        else:
            document_ids = list(active_document_ids)

        try:
            result = await self._chunk_store.vector_search(
                None if is_zero_vector(embedding) else embedding,
                ctx,
                document_ids=document_ids,
                limit=self.config.persistent_limit,
                query_text=query,
                min_similarity=self.config.persistent_min_similarity,
            )
        except PersistentStoreUnavailableError as e:
            if not len(found):
                raise
            self._logger.log_degraded(
                "retrieval", "persistent store unavailable, using memory results", error=str(e)
            )
            return

        found.add(result.matches)
        if result.matches:
            modes.append(result.mode)
