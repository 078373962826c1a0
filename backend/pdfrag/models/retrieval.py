"""Retrieval result models."""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


class SearchMode(str, Enum):
    """Strategy that produced a set of search results."""

    MEMORY_SIMILARITY = "memory_similarity"
    MEMORY_MMR = "memory_mmr"
    SERVER_VECTOR = "server_vector"
    EXPLICIT_DISTANCE = "explicit_distance"
    KEYWORD = "keyword"


# Anything other than a direct similarity search is a fallback
DEGRADED_MODES = frozenset({SearchMode.MEMORY_MMR, SearchMode.EXPLICIT_DISTANCE, SearchMode.KEYWORD})


class ScoredChunk(BaseModel):
    """Chunk returned by a search with its similarity score."""

    document_id: UUID
    document_title: str
    chunk_index: int
    content: str
    page: int | None = None
    contains_equations: bool = False
    chunk_type: str = "text"
    score: float
    mode: SearchMode = SearchMode.MEMORY_SIMILARITY


class SearchResult(BaseModel):
    """Ranked matches from one store plus the strategy that produced them."""

    matches: list[ScoredChunk] = Field(default_factory=list)
    mode: SearchMode

    @property
    def degraded(self) -> bool:
        return self.mode in DEGRADED_MODES


class RetrievalResult(BaseModel):
    """Deduplicated, ranked chunks for a query."""

    chunks: list[ScoredChunk]
    variants: list[str] = Field(default_factory=list)
    modes: list[SearchMode] = Field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return any(mode in DEGRADED_MODES for mode in self.modes)
