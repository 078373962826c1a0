"""Repository interfaces for documents, chunks and RAG sessions."""

from collections.abc import Sequence
from typing import Any, Protocol
from uuid import UUID

from backend.pdfrag.db.context import RequestContext
from backend.pdfrag.models.docs import Chunk, Document, ExtractedDocument
from backend.pdfrag.models.retrieval import SearchResult
from backend.pdfrag.models.session import DeleteResult, RagSession


class DocumentStore(Protocol):
    """Interface for document persistence with ownership and visibility rules."""

    async def create_document(
        self, extracted: ExtractedDocument, ctx: RequestContext, *, is_public: bool = False
    ) -> Document:
        """Store a newly extracted document.

        Args:
            extracted: Extracted text and metadata
            ctx: Request context (owner)
            is_public: Whether other users may read the document

        Returns:
            Stored document metadata
        """
        ...

    async def replace_content(
        self, document_id: UUID, extracted: ExtractedDocument, ctx: RequestContext
    ) -> Document:
        """Replace a document's text on re-upload (owner only).

        Raises:
            DocumentNotFoundError: If the document does not exist
            DocumentAccessDeniedError: If the caller is not the owner
        """
        ...

    async def get_document(self, document_id: UUID, ctx: RequestContext) -> Document:
        """Get document metadata the caller may see.

        Raises:
            DocumentNotFoundError: If the document does not exist
            DocumentAccessDeniedError: If the document is private to someone else
        """
        ...

    async def get_document_content(self, document_id: UUID, ctx: RequestContext) -> str:
        """Get full document text and record the access.

        Raises:
            DocumentNotFoundError: If the document does not exist
            DocumentAccessDeniedError: If the document is private to someone else
        """
        ...

    async def delete_document(self, document_id: UUID, ctx: RequestContext) -> DeleteResult:
        """Delete an owned document, its chunks and every reference to it.

        Removes the id from all conversations' document_context and from all
        session document sets before deleting chunks and the document row.

        Raises:
            DocumentNotFoundError: If the document does not exist
            DocumentAccessDeniedError: If the caller is not the owner
        """
        ...

    async def list_documents(self, ctx: RequestContext) -> list[Document]:
        """List own, public and shared documents, newest first, without duplicates."""
        ...


class ChunkStore(Protocol):
    """Interface for persisted chunks and their embeddings."""

    async def upsert_chunks(
        self,
        document_id: UUID,
        chunks: Sequence[Chunk],
        embeddings: Sequence[Sequence[float]],
        ctx: RequestContext,
    ) -> list[UUID]:
        """Insert or update chunks keyed by (document_id, chunk_index).

        Rows with chunk_index beyond the new chunk count are deleted.

        Returns:
            Chunk ids in chunk order
        """
        ...

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
        """Search chunks by cosine similarity, degrading to keyword search.

        Args:
            embedding: Query embedding; None skips straight to keyword search
            ctx: Request context
            document_ids: Restrict to these documents (the active set)
            limit: Maximum matches
            query_text: Raw query used by the keyword fallback
            min_similarity: Minimum cosine similarity for vector matches

        Returns:
            SearchResult recording which strategy produced the matches

        Raises:
            PersistentStoreUnavailableError: If every strategy failed
        """
        ...

    async def delete_chunks(self, document_id: UUID, ctx: RequestContext) -> int:
        """Delete all chunks of a document. Returns the number deleted."""
        ...

    async def list_chunks(self, document_id: UUID, ctx: RequestContext) -> list[Chunk]:
        """List a document's chunks with embeddings, in chunk order."""
        ...


class SessionStore(Protocol):
    """Interface for RAG sessions and conversation document context."""

    async def create_session(
        self,
        document_ids: Sequence[UUID],
        config: dict[str, Any],
        ctx: RequestContext,
        *,
        conversation_id: UUID | None = None,
        model_version: str | None = None,
    ) -> RagSession:
        """Create an active session for the given documents."""
        ...

    async def touch_session(self, session_id: UUID, ctx: RequestContext) -> None:
        """Update last_accessed_at."""
        ...

    async def get_active_session(self, ctx: RequestContext) -> RagSession | None:
        """Most recently accessed active session, or None."""
        ...

    async def update_session_documents(
        self, session_id: UUID, document_ids: Sequence[UUID], ctx: RequestContext
    ) -> None:
        """Replace the session's active document set and touch it."""
        ...

    async def close_session(self, session_id: UUID, ctx: RequestContext) -> None:
        """Mark the session inactive."""
        ...

    async def get_conversation_documents(
        self, conversation_id: UUID, ctx: RequestContext
    ) -> list[UUID]:
        """Document ids linked to a conversation (empty if unknown)."""
        ...

    async def set_conversation_documents(
        self, conversation_id: UUID, document_ids: Sequence[UUID], ctx: RequestContext
    ) -> None:
        """Replace a conversation's document context, creating the row if needed."""
        ...
