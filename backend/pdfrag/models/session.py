"""RAG session and ingestion report models."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field


class RagSession(BaseModel):
    """Set of documents active for retrieval."""

    session_id: UUID
    user_id: UUID
    document_ids: list[UUID]
    conversation_id: UUID | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    status: Literal["active", "inactive"] = "active"
    model_version: str | None = None
    last_accessed_at: datetime


class FailedSource(BaseModel):
    """A file that could not be ingested."""

    name: str
    reason: str


class IngestedDocument(BaseModel):
    """A document that was ingested successfully."""

    document_id: UUID
    title: str
    chunk_count: int
    degraded_chunks: int = 0


class IngestionReport(BaseModel):
    """Partial-success report for a multi-file ingestion."""

    processed: list[IngestedDocument] = Field(default_factory=list)
    failed: list[FailedSource] = Field(default_factory=list)
    session_id: UUID | None = None

    @property
    def total(self) -> int:
        return len(self.processed) + len(self.failed)

    @property
    def summary(self) -> str:
        text = f"processed {len(self.processed)} of {self.total} files"
        if self.failed:
            reasons = ", ".join(f"{f.name} ({f.reason})" for f in self.failed)
            text += f"; failed: {reasons}"
        return text


class DeleteResult(BaseModel):
    """Outcome of deleting a document."""

    document_id: UUID
    freed_bytes: int
    affected_conversations: int
