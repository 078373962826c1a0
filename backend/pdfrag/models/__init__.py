"""Models package - re-exports for convenience."""

from backend.pdfrag.models.answer import (
    AssembledContext,
    ChatTurn,
    Citation,
    GeneratedAnswer,
    GenerationConfig,
    PerformanceSnapshot,
    QueryCategory,
    QueryClassification,
    QueryResult,
    ResponseStyle,
    ThinkingSplit,
)
from backend.pdfrag.models.docs import (
    Chunk,
    ChunkDraft,
    ChunkType,
    Document,
    ExtractedDocument,
    SourceFile,
)
from backend.pdfrag.models.retrieval import (
    RetrievalResult,
    ScoredChunk,
    SearchMode,
    SearchResult,
)
from backend.pdfrag.models.session import (
    DeleteResult,
    FailedSource,
    IngestedDocument,
    IngestionReport,
    RagSession,
)

__all__ = [
    # Documents
    "Document",
    "ExtractedDocument",
    "ChunkDraft",
    "Chunk",
    "ChunkType",
    "SourceFile",
    # Retrieval
    "SearchMode",
    "ScoredChunk",
    "SearchResult",
    "RetrievalResult",
    # Generation
    "ChatTurn",
    "GenerationConfig",
    "Citation",
    "AssembledContext",
    "QueryClassification",
    "QueryCategory",
    "ThinkingSplit",
    "GeneratedAnswer",
    "PerformanceSnapshot",
    "QueryResult",
    "ResponseStyle",
    # Sessions
    "RagSession",
    "FailedSource",
    "IngestedDocument",
    "IngestionReport",
    "DeleteResult",
]
