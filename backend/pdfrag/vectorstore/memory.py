"""In-memory vector store - the working set of one RAG session.

Writes are serialised by an asyncio lock and publish a new immutable snapshot;
searches read whichever snapshot is current, so a reader never sees a partially
applied upsert or removal.
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from uuid import UUID

import numpy as np

from backend.pdfrag.embeddings.gateway import EmbeddingGateway
from backend.pdfrag.models.docs import Chunk
from backend.pdfrag.models.retrieval import ScoredChunk, SearchMode


@dataclass(frozen=True, eq=False)
class VectorStoreEntry:
    """In-memory mirror of a persisted chunk."""

    document_id: UUID
    document_title: str
    chunk_index: int
    content: str
    page: int | None
    contains_equations: bool
    chunk_type: str

    def to_scored(self, score: float, mode: SearchMode) -> ScoredChunk:
        return ScoredChunk(
            document_id=self.document_id,
            document_title=self.document_title,
            chunk_index=self.chunk_index,
            content=self.content,
            page=self.page,
            contains_equations=self.contains_equations,
            chunk_type=self.chunk_type,
            score=score,
            mode=mode,
        )


@dataclass(frozen=True, eq=False)
class _Snapshot:
    entries: tuple[VectorStoreEntry, ...]
    # Row i is the unit-normalised embedding of entries[i]
    matrix: np.ndarray


def _unit_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


class InMemoryVectorStore:
    """Cosine-similarity index over the active documents' chunks."""

    def __init__(self, gateway: EmbeddingGateway) -> None:
        self._gateway = gateway
        self._lock = asyncio.Lock()
        self._snapshot = self._empty_snapshot()

    def _empty_snapshot(self) -> _Snapshot:
        return _Snapshot(entries=(), matrix=np.zeros((0, self._gateway.dimension)))

    def __len__(self) -> int:
        return len(self._snapshot.entries)

    @property
    def is_empty(self) -> bool:
        return not self._snapshot.entries

    @property
    def document_ids(self) -> set[UUID]:
        return {entry.document_id for entry in self._snapshot.entries}

    @property
    def document_titles(self) -> set[str]:
        return {entry.document_title for entry in self._snapshot.entries}

    async def upsert(
        self, chunks: Sequence[Chunk], vectors: Sequence[Sequence[float]] | None = None
    ) -> None:
        """Add chunks, replacing entries with the same (document_id, chunk_index).

        Args:
            chunks: Chunks to index
            vectors: Embeddings aligned with chunks; defaults to each chunk's embedding
        """
        if vectors is None:
            vectors = [chunk.embedding for chunk in chunks]
        if len(vectors) != len(chunks):
            raise ValueError(f"{len(chunks)} chunks but {len(vectors)} vectors")
        if not chunks:
            return

        new_entries = [
            VectorStoreEntry(
                document_id=chunk.document_id,
                document_title=chunk.document_title,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                page=chunk.page,
                contains_equations=chunk.contains_equations,
                chunk_type=chunk.chunk_type,
            )
            for chunk in chunks
        ]
        new_rows = _unit_rows(np.array([self._gateway.normalize(v) for v in vectors], dtype=float))
        replaced = {(entry.document_id, entry.chunk_index) for entry in new_entries}

        async with self._lock:
            current = self._snapshot
            keep = [
                i
                for i, entry in enumerate(current.entries)
                if (entry.document_id, entry.chunk_index) not in replaced
            ]
            self._snapshot = _Snapshot(
                entries=tuple(current.entries[i] for i in keep) + tuple(new_entries),
                matrix=np.vstack([current.matrix[keep], new_rows]),
            )

    async def remove(self, document_id: UUID) -> int:
        """Rebuild the store without one document's entries.

        Returns:
            Number of entries removed
        """
        async with self._lock:
            current = self._snapshot
            keep = [i for i, entry in enumerate(current.entries) if entry.document_id != document_id]
            removed = len(current.entries) - len(keep)
            if removed:
                self._snapshot = _Snapshot(
                    entries=tuple(current.entries[i] for i in keep),
                    matrix=current.matrix[keep],
                )
            return removed

    async def clear(self) -> None:
        """Drop all entries."""
        async with self._lock:
            self._snapshot = self._empty_snapshot()

    async def _query_vector(self, query: str | Sequence[float]) -> np.ndarray | None:
        if isinstance(query, str):
            vector = await self._gateway.embed(query)
        else:
            vector = self._gateway.normalize(query)
        q = np.asarray(vector, dtype=float)
        norm = np.linalg.norm(q)
        # A zero vector (failed embedding) matches nothing meaningfully
        return q / norm if norm else None

    def search_by_vector(self, query: Sequence[float], k: int = 7) -> list[ScoredChunk]:
        """Top-k entries by cosine similarity; equal scores keep insertion order."""
        q = np.asarray(self._gateway.normalize(query), dtype=float)
        norm = np.linalg.norm(q)
        if not norm:
            return []
        return self._top_k(self._snapshot, q / norm, k)

    def _top_k(self, snapshot: _Snapshot, q: np.ndarray, k: int) -> list[ScoredChunk]:
        if not snapshot.entries or k <= 0:
            return []
        scores = snapshot.matrix @ q
        order = np.argsort(-scores, kind="stable")[:k]
        return [
            snapshot.entries[i].to_scored(float(scores[i]), SearchMode.MEMORY_SIMILARITY)
            for i in order
        ]

    async def search(self, query: str | Sequence[float], k: int = 7) -> list[ScoredChunk]:
        """Top-k entries for a query text (embedded via the gateway) or vector."""
        q = await self._query_vector(query)
        if q is None:
            return []
        return self._top_k(self._snapshot, q, k)

    async def max_marginal_relevance_search(
        self,
        query: str | Sequence[float],
        k: int = 5,
        fetch_k: int = 20,
        lambda_mult: float = 0.5,
    ) -> list[ScoredChunk]:
        """Select k diverse entries from the fetch_k most similar.

        Each step picks the candidate maximising
        ``lambda_mult * sim(query, c) - (1 - lambda_mult) * max(sim(c, selected))``.
        """
        q = await self._query_vector(query)
        snapshot = self._snapshot
        if q is None or not snapshot.entries or k <= 0:
            return []

        scores = snapshot.matrix @ q
        candidates = list(np.argsort(-scores, kind="stable")[:fetch_k])
        selected: list[int] = []
        while candidates and len(selected) < k:
            if selected:
                redundancy = (snapshot.matrix[candidates] @ snapshot.matrix[selected].T).max(axis=1)
            else:
                redundancy = np.zeros(len(candidates))
            mmr = lambda_mult * scores[candidates] - (1 - lambda_mult) * redundancy
            best = int(np.argmax(mmr))
            selected.append(candidates.pop(best))

        return [
            snapshot.entries[i].to_scored(float(scores[i]), SearchMode.MEMORY_MMR) for i in selected
        ]
