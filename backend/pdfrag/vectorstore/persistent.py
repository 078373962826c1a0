"""Persistent chunk store - the authoritative vector tier.

Similarity search is an ordered strategy list:

1. server_vector: pgvector cosine distance evaluated by Postgres
2. explicit_distance: cosine similarity computed here over fetched embeddings
3. keyword: ILIKE match on the first query keywords, pseudo-scored

The strategy that answered is recorded on the SearchResult so callers can tell a
vector match from a keyword guess.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any
from uuid import UUID

import numpy as np
from sqlalchemy import ColumnElement, delete, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.pdfrag.db.context import RequestContext
from backend.pdfrag.db.models import EMBEDDING_DIMENSION, DocChunk
from backend.pdfrag.embeddings.gateway import fit_dimension, is_zero_vector
from backend.pdfrag.errors import PersistentStoreUnavailableError, StrategyUnavailableError
from backend.pdfrag.models.docs import Chunk
from backend.pdfrag.models.retrieval import ScoredChunk, SearchMode, SearchResult
from backend.pdfrag.utils.logging import StructuredRagLogger
from backend.pdfrag.utils.metrics import RagMetrics
from backend.pdfrag.vectorstore.keywords import extract_keywords, keyword_score, sanitize_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _SearchRequest:
    embedding: list[float] | None
    ctx: RequestContext
    document_ids: list[UUID] | None
    limit: int
    query_text: str | None
    min_similarity: float


def chunk_metadata(chunk: Chunk) -> dict[str, Any]:
    return {
        "document_title": chunk.document_title,
        "page": chunk.page,
        "contains_equations": chunk.contains_equations,
        "chunk_type": chunk.chunk_type,
    }


def _to_scored(row: DocChunk, score: float, mode: SearchMode) -> ScoredChunk:
    meta = row.chunk_metadata or {}
    return ScoredChunk(
        document_id=row.document_id,
        document_title=meta.get("document_title", ""),
        chunk_index=row.chunk_index,
        content=row.content,
        page=meta.get("page"),
        contains_equations=bool(meta.get("contains_equations", False)),
        chunk_type=meta.get("chunk_type", "text"),
        score=score,
        mode=mode,
    )


class SqlChunkStore:
    """SQLAlchemy implementation of ChunkStore."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        dimension: int = EMBEDDING_DIMENSION,
        batch_size: int = 100,
        metrics: RagMetrics | None = None,
        logger: StructuredRagLogger | None = None,
    ) -> None:
        self._session = session
        self.dimension = dimension
        self.batch_size = batch_size
        self._metrics = metrics or RagMetrics()
        self._logger = logger or StructuredRagLogger()

    @property
    def _dialect(self) -> str:
        return self._session.get_bind().dialect.name

    def _insert(self) -> Any:
        if self._dialect == "postgresql":
            return pg_insert(DocChunk.__table__)
        if self._dialect == "sqlite":
            return sqlite_insert(DocChunk.__table__)
        raise NotImplementedError(f"upsert not supported for dialect {self._dialect}")

    async def upsert_chunks(
        self,
        document_id: UUID,
        chunks: Sequence[Chunk],
        embeddings: Sequence[Sequence[float]],
        ctx: RequestContext,
    ) -> list[UUID]:
        """Upsert chunks in batches keyed by (document_id, chunk_index), then trim."""
        if len(chunks) != len(embeddings):
            raise ValueError(f"{len(chunks)} chunks but {len(embeddings)} embeddings")

        rows = [
            {
                "chunk_id": uuid.uuid4(),
                "document_id": document_id,
                "user_id": ctx.user_id,
                "chunk_index": chunk.chunk_index,
                "content": sanitize_text(chunk.content),
                "metadata": chunk_metadata(chunk),
                "embedding": fit_dimension(vector, self.dimension)[0],
            }
            for chunk, vector in zip(chunks, embeddings)
        ]

        for start in range(0, len(rows), self.batch_size):
            stmt = self._insert().values(rows[start : start + self.batch_size])
            stmt = stmt.on_conflict_do_update(
                index_elements=["document_id", "chunk_index"],
                set_={
                    "user_id": stmt.excluded.user_id,
                    "content": stmt.excluded.content,
                    "metadata": stmt.excluded["metadata"],
                    "embedding": stmt.excluded.embedding,
                },
            )
            await self._session.execute(stmt)

        # Drop chunks left over from a longer previous version
        await self._session.execute(
            delete(DocChunk).where(
                DocChunk.document_id == document_id,
                DocChunk.chunk_index >= len(chunks),
            )
        )
        await self._session.commit()

        result = await self._session.execute(
            select(DocChunk.chunk_id)
            .where(DocChunk.document_id == document_id)
            .order_by(DocChunk.chunk_index)
        )
        return list(result.scalars().all())

    async def delete_chunks(self, document_id: UUID, ctx: RequestContext) -> int:
        """Delete all of the caller's chunks for a document."""
        result = await self._session.execute(
            delete(DocChunk).where(
                DocChunk.document_id == document_id,
                DocChunk.user_id == ctx.user_id,
            )
        )
        await self._session.commit()
        return result.rowcount or 0

    async def list_chunks(self, document_id: UUID, ctx: RequestContext) -> list[Chunk]:
        """List a document's chunks with embeddings, in chunk order."""
        result = await self._session.execute(
            select(DocChunk)
            .where(DocChunk.document_id == document_id)
            .order_by(DocChunk.chunk_index)
            .execution_options(populate_existing=True)
        )
        chunks: list[Chunk] = []
        for row in result.scalars().all():
            meta = row.chunk_metadata or {}
            chunks.append(
                Chunk(
                    document_id=row.document_id,
                    document_title=meta.get("document_title", ""),
                    chunk_index=row.chunk_index,
                    content=row.content,
                    page=meta.get("page"),
                    contains_equations=bool(meta.get("contains_equations", False)),
                    chunk_type=meta.get("chunk_type", "text"),
                    embedding=[float(v) for v in row.embedding] if row.embedding is not None else [],
                )
            )
        return chunks

    def _scope(self, request: _SearchRequest) -> ColumnElement[bool]:
        if request.document_ids is not None:
            return DocChunk.document_id.in_(request.document_ids)
        return DocChunk.user_id == request.ctx.user_id

    async def _server_vector_search(self, request: _SearchRequest) -> list[ScoredChunk]:
        if request.embedding is None:
            raise StrategyUnavailableError("no query embedding", stage="persistent_search")
        if self._dialect != "postgresql":
            raise StrategyUnavailableError("pgvector requires postgresql", stage="persistent_search")

        distance = DocChunk.embedding.cosine_distance(request.embedding)
        similarity = 1 - distance
        result = await self._session.execute(
            select(DocChunk, similarity.label("similarity"))
            .where(
                self._scope(request),
                DocChunk.embedding.is_not(None),
                similarity >= request.min_similarity,
            )
            .order_by(distance)
            .limit(request.limit)
            .execution_options(populate_existing=True)
        )
        return [
            _to_scored(row, float(score), SearchMode.SERVER_VECTOR) for row, score in result.all()
        ]

    async def _explicit_distance_search(self, request: _SearchRequest) -> list[ScoredChunk]:
        if request.embedding is None:
            raise StrategyUnavailableError("no query embedding", stage="persistent_search")

        result = await self._session.execute(
            select(DocChunk)
            .where(self._scope(request), DocChunk.embedding.is_not(None))
            .order_by(DocChunk.document_id, DocChunk.chunk_index)
            .execution_options(populate_existing=True)
        )
        rows = list(result.scalars().all())
        if not rows:
            return []

        query = np.asarray(request.embedding, dtype=float)
        matrix = np.array(
            [fit_dimension(row.embedding, self.dimension)[0] for row in rows], dtype=float
        )
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = np.inf
        scores = (matrix @ query) / norms

        order = np.argsort(-scores, kind="stable")
        matches = [
            _to_scored(rows[i], float(scores[i]), SearchMode.EXPLICIT_DISTANCE)
            for i in order
            if scores[i] >= request.min_similarity
        ]
        return matches[: request.limit]

    async def _keyword_search(self, request: _SearchRequest) -> list[ScoredChunk]:
        keywords = extract_keywords(request.query_text or "")
        if not keywords:
            raise StrategyUnavailableError("no usable keywords", stage="persistent_search")

        result = await self._session.execute(
            select(DocChunk)
            .where(
                self._scope(request),
                or_(*(DocChunk.content.ilike(f"%{keyword}%") for keyword in keywords)),
            )
            .order_by(DocChunk.document_id, DocChunk.chunk_index)
            .execution_options(populate_existing=True)
            .limit(request.limit)
        )
        return [
            _to_scored(row, keyword_score(rank), SearchMode.KEYWORD)
            for rank, row in enumerate(result.scalars().all())
        ]

    async def vector_search(
        self,
        embedding: Sequence[float] | None,
        ctx: RequestContext,
        *,
        document_ids: Sequence[UUID] | None = None,
        limit: int = 10,
        query_text: str | None = None,
        min_similarity: float = 0.5,
    ) -> SearchResult:
        """Run the strategy list until one runs without failing.

        A vector strategy that runs and finds nothing above the threshold is an
        answer; only an unavailable or failing strategy falls through to the next.

        Raises:
            PersistentStoreUnavailableError: If every applicable strategy raised
        """
        vector = None
        if embedding is not None and not is_zero_vector(embedding):
            vector = fit_dimension(embedding, self.dimension)[0]
        request = _SearchRequest(
            embedding=vector,
            ctx=ctx,
            document_ids=list(document_ids) if document_ids is not None else None,
            limit=limit,
            query_text=query_text,
            min_similarity=min_similarity,
        )
        strategies: list[tuple[SearchMode, Callable[[_SearchRequest], Awaitable[list[ScoredChunk]]]]] = [
            (SearchMode.SERVER_VECTOR, self._server_vector_search),
            (SearchMode.EXPLICIT_DISTANCE, self._explicit_distance_search),
            (SearchMode.KEYWORD, self._keyword_search),
        ]

        last_error: SQLAlchemyError | None = None
        for mode, strategy in strategies:
            try:
                matches = await strategy(request)
            except StrategyUnavailableError as e:
                logger.debug(f"Skipping {mode.value}: {e}")
                continue
            except SQLAlchemyError as e:
                last_error = e
                await self._session.rollback()
                self._logger.log_degraded("persistent_search", f"{mode.value} failed", error=str(e)[:200])
                continue

            self._metrics.inc_search_strategy(mode.value)
            result = SearchResult(matches=matches, mode=mode)
            self._logger.log_search(mode.value, len(matches), result.degraded)
            return result

        if last_error is not None:
            raise PersistentStoreUnavailableError(
                f"all search strategies failed: {last_error}", stage="persistent_search"
            ) from last_error
        return SearchResult(matches=[], mode=SearchMode.KEYWORD)
