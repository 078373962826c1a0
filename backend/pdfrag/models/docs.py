"""Document and chunk domain models."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

ChunkType = Literal["text", "math_content"]


class Document(BaseModel):
    """Stored document metadata (text content is fetched separately)."""

    document_id: UUID
    user_id: UUID
    title: str
    byte_size: int = 0
    page_count: int = 0
    contains_equations: bool = False
    is_public: bool = False
    is_shared: bool = False
    created_at: datetime


class ExtractedDocument(BaseModel):
    """Output of PDF text extraction, input to ingestion."""

    title: str
    text: str
    page_count: int = 0
    byte_size: int = 0
    contains_equations: bool = False


class ChunkDraft(BaseModel):
    """Chunk produced by the chunker, before embedding.

    ``start``/``end`` are character offsets into the source text; consecutive
    drafts may overlap.
    """

    index: int
    content: str
    start: int
    end: int
    page: int | None = None
    contains_equations: bool = False
    chunk_type: ChunkType = "text"
    equation_count: int = 0


class Chunk(BaseModel):
    """Embedded chunk belonging to exactly one document."""

    document_id: UUID
    document_title: str
    chunk_index: int
    content: str
    page: int | None = None
    contains_equations: bool = False
    chunk_type: ChunkType = "text"
    embedding: list[float] = Field(default_factory=list)


class SourceFile(BaseModel):
    """Uploaded file awaiting ingestion."""

    name: str
    data: bytes
