"""In-memory implementations of repository interfaces.

All three stores share one InMemoryStorage so that deleting a document can scrub
conversation and session references, as the SQL implementation does.
"""

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import numpy as np

from backend.pdfrag.db.context import RequestContext
from backend.pdfrag.errors import DocumentAccessDeniedError, DocumentNotFoundError
from backend.pdfrag.embeddings.gateway import fit_dimension, is_zero_vector
from backend.pdfrag.models.docs import Chunk, Document, ExtractedDocument
from backend.pdfrag.models.retrieval import ScoredChunk, SearchMode, SearchResult
from backend.pdfrag.models.session import DeleteResult, RagSession
from backend.pdfrag.vectorstore.keywords import extract_keywords, keyword_score, sanitize_text


@dataclass
class StoredDocument:
    """Document row held in memory."""

    document: Document
    content: str
    shared_with: set[uuid.UUID] = field(default_factory=set)
    last_accessed_at: datetime | None = None


@dataclass
class InMemoryStorage:
    """Shared tables for the in-memory stores."""

    documents: dict[uuid.UUID, StoredDocument] = field(default_factory=dict)
    # document_id -> chunk_index -> (owner, chunk)
    chunks: dict[uuid.UUID, dict[int, tuple[uuid.UUID, Chunk]]] = field(default_factory=dict)
    sessions: dict[uuid.UUID, RagSession] = field(default_factory=dict)
    # conversation_id -> (owner, document ids)
    conversations: dict[uuid.UUID, tuple[uuid.UUID, list[uuid.UUID]]] = field(default_factory=dict)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore."""

    def __init__(self, storage: InMemoryStorage) -> None:
        self._storage = storage

    def _load(self, document_id: uuid.UUID) -> StoredDocument:
        stored = self._storage.documents.get(document_id)
        if stored is None:
            raise DocumentNotFoundError(f"document {document_id} not found", stage="documents")
        return stored

    def _can_read(self, stored: StoredDocument, ctx: RequestContext) -> bool:
        doc = stored.document
        if doc.user_id == ctx.user_id or doc.is_public:
            return True
        return doc.is_shared and ctx.user_id in stored.shared_with

    def _load_owned(self, document_id: uuid.UUID, ctx: RequestContext) -> StoredDocument:
        stored = self._load(document_id)
        if stored.document.user_id != ctx.user_id:
            raise DocumentAccessDeniedError(
                f"user {ctx.user_id} does not own document {document_id}", stage="documents"
            )
        return stored

    def _load_readable(self, document_id: uuid.UUID, ctx: RequestContext) -> StoredDocument:
        stored = self._load(document_id)
        if not self._can_read(stored, ctx):
            raise DocumentAccessDeniedError(
                f"user {ctx.user_id} cannot read document {document_id}", stage="documents"
            )
        return stored

    def share(self, document_id: uuid.UUID, user_id: uuid.UUID) -> None:
        """Share a document with another user."""
        stored = self._load(document_id)
        stored.shared_with.add(user_id)
        stored.document = stored.document.model_copy(update={"is_shared": True})

    async def create_document(
        self, extracted: ExtractedDocument, ctx: RequestContext, *, is_public: bool = False
    ) -> Document:
        document = Document(
            document_id=uuid.uuid4(),
            user_id=ctx.user_id,
            title=extracted.title,
            byte_size=extracted.byte_size or len(extracted.text.encode("utf-8")),
            page_count=extracted.page_count,
            contains_equations=extracted.contains_equations,
            is_public=is_public,
            created_at=_now(),
        )
        self._storage.documents[document.document_id] = StoredDocument(
            document=document, content=extracted.text
        )
        return document

    async def replace_content(
        self, document_id: uuid.UUID, extracted: ExtractedDocument, ctx: RequestContext
    ) -> Document:
        stored = self._load_owned(document_id, ctx)
        stored.content = extracted.text
        stored.document = stored.document.model_copy(
            update={
                "title": extracted.title,
                "byte_size": extracted.byte_size or len(extracted.text.encode("utf-8")),
                "page_count": extracted.page_count,
                "contains_equations": extracted.contains_equations,
            }
        )
        return stored.document

    async def get_document(self, document_id: uuid.UUID, ctx: RequestContext) -> Document:
        return self._load_readable(document_id, ctx).document

    async def get_document_content(self, document_id: uuid.UUID, ctx: RequestContext) -> str:
        stored = self._load_readable(document_id, ctx)
        stored.last_accessed_at = _now()
        return stored.content

    async def delete_document(self, document_id: uuid.UUID, ctx: RequestContext) -> DeleteResult:
        stored = self._load_owned(document_id, ctx)

        affected = 0
        for conversation_id, (owner, doc_ids) in self._storage.conversations.items():
            if owner == ctx.user_id and document_id in doc_ids:
                self._storage.conversations[conversation_id] = (
                    owner,
                    [d for d in doc_ids if d != document_id],
                )
                affected += 1

        for session_id, session in self._storage.sessions.items():
            if session.user_id == ctx.user_id and document_id in session.document_ids:
                self._storage.sessions[session_id] = session.model_copy(
                    update={"document_ids": [d for d in session.document_ids if d != document_id]}
                )

        self._storage.chunks.pop(document_id, None)
        del self._storage.documents[document_id]
        return DeleteResult(
            document_id=document_id,
            freed_bytes=stored.document.byte_size,
            affected_conversations=affected,
        )

    async def list_documents(self, ctx: RequestContext) -> list[Document]:
        readable = [
            stored.document
            for stored in self._storage.documents.values()
            if self._can_read(stored, ctx)
        ]
        return sorted(readable, key=lambda d: d.created_at, reverse=True)


class InMemoryChunkStore:
    """In-memory implementation of ChunkStore.

    Has no server-side vector operator, so vector search always runs the
    explicit distance strategy, then keywords.
    """

    def __init__(self, storage: InMemoryStorage, *, dimension: int = 1536) -> None:
        self._storage = storage
        self.dimension = dimension

    async def upsert_chunks(
        self,
        document_id: uuid.UUID,
        chunks: Sequence[Chunk],
        embeddings: Sequence[Sequence[float]],
        ctx: RequestContext,
    ) -> list[uuid.UUID]:
        if len(chunks) != len(embeddings):
            raise ValueError(f"{len(chunks)} chunks but {len(embeddings)} embeddings")
        rows = self._storage.chunks.setdefault(document_id, {})
        for chunk, vector in zip(chunks, embeddings):
            rows[chunk.chunk_index] = (
                ctx.user_id,
                chunk.model_copy(
                    update={
                        "document_id": document_id,
                        "content": sanitize_text(chunk.content),
                        "embedding": fit_dimension(vector, self.dimension)[0],
                    }
                ),
            )
        for index in [i for i in rows if i >= len(chunks)]:
            del rows[index]
        # Deterministic ids: one per (document, index)
        return [uuid.uuid5(document_id, str(index)) for index in sorted(rows)]

    async def delete_chunks(self, document_id: uuid.UUID, ctx: RequestContext) -> int:
        rows = self._storage.chunks.get(document_id, {})
        owned = [i for i, (owner, _) in rows.items() if owner == ctx.user_id]
        for index in owned:
            del rows[index]
        return len(owned)

    async def list_chunks(self, document_id: uuid.UUID, ctx: RequestContext) -> list[Chunk]:
        rows = self._storage.chunks.get(document_id, {})
        return [rows[i][1] for i in sorted(rows)]

    def _scoped(
        self, ctx: RequestContext, document_ids: Sequence[uuid.UUID] | None
    ) -> list[Chunk]:
        selected: list[Chunk] = []
        for document_id in sorted(self._storage.chunks, key=str):
            rows = self._storage.chunks[document_id]
            for index in sorted(rows):
                owner, chunk = rows[index]
                if document_ids is not None:
                    if document_id in document_ids:
                        selected.append(chunk)
                elif owner == ctx.user_id:
                    selected.append(chunk)
        return selected

    async def vector_search(
        self,
        embedding: Sequence[float] | None,
        ctx: RequestContext,
        *,
        document_ids: Sequence[uuid.UUID] | None = None,
        limit: int = 10,
        query_text: str | None = None,
        min_similarity: float = 0.5,
    ) -> SearchResult:
        candidates = self._scoped(ctx, document_ids)

        if embedding is not None and not is_zero_vector(embedding) and candidates:
            query = np.asarray(fit_dimension(embedding, self.dimension)[0], dtype=float)
            matrix = np.array([c.embedding for c in candidates], dtype=float)
            norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
            norms[norms == 0] = np.inf
            scores = (matrix @ query) / norms
            order = np.argsort(-scores, kind="stable")
            matches = [
                _scored(candidates[i], float(scores[i]), SearchMode.EXPLICIT_DISTANCE)
                for i in order
                if scores[i] >= min_similarity
            ][:limit]
            return SearchResult(matches=matches, mode=SearchMode.EXPLICIT_DISTANCE)

        keywords = extract_keywords(query_text or "")
        hits = [
            chunk
            for chunk in candidates
            if any(keyword in chunk.content.lower() for keyword in keywords)
        ][:limit]
        return SearchResult(
            matches=[
                _scored(chunk, keyword_score(rank), SearchMode.KEYWORD)
                for rank, chunk in enumerate(hits)
            ],
            mode=SearchMode.KEYWORD,
        )


def _scored(chunk: Chunk, score: float, mode: SearchMode) -> ScoredChunk:
    return ScoredChunk(
        document_id=chunk.document_id,
        document_title=chunk.document_title,
        chunk_index=chunk.chunk_index,
        content=chunk.content,
        page=chunk.page,
        contains_equations=chunk.contains_equations,
        chunk_type=chunk.chunk_type,
        score=score,
        mode=mode,
    )


class InMemorySessionStore:
    """In-memory implementation of SessionStore."""

    def __init__(self, storage: InMemoryStorage) -> None:
        self._storage = storage

    def _owned(self, session_id: uuid.UUID, ctx: RequestContext) -> RagSession | None:
        session = self._storage.sessions.get(session_id)
        if session is None or session.user_id != ctx.user_id:
            return None
        return session

    async def create_session(
        self,
        document_ids: Sequence[uuid.UUID],
        config: dict[str, Any],
        ctx: RequestContext,
        *,
        conversation_id: uuid.UUID | None = None,
        model_version: str | None = None,
    ) -> RagSession:
        session = RagSession(
            session_id=uuid.uuid4(),
            user_id=ctx.user_id,
            document_ids=list(document_ids),
            conversation_id=conversation_id,
            config=config,
            model_version=model_version,
            last_accessed_at=_now(),
        )
        self._storage.sessions[session.session_id] = session
        return session

    async def touch_session(self, session_id: uuid.UUID, ctx: RequestContext) -> None:
        session = self._owned(session_id, ctx)
        if session is not None:
            self._storage.sessions[session_id] = session.model_copy(
                update={"last_accessed_at": _now()}
            )

    async def get_active_session(self, ctx: RequestContext) -> RagSession | None:
        active = [
            s
            for s in self._storage.sessions.values()
            if s.user_id == ctx.user_id and s.status == "active"
        ]
        return max(active, key=lambda s: s.last_accessed_at, default=None)

    async def update_session_documents(
        self, session_id: uuid.UUID, document_ids: Sequence[uuid.UUID], ctx: RequestContext
    ) -> None:
        session = self._owned(session_id, ctx)
        if session is not None:
            self._storage.sessions[session_id] = session.model_copy(
                update={"document_ids": list(document_ids), "last_accessed_at": _now()}
            )

    async def close_session(self, session_id: uuid.UUID, ctx: RequestContext) -> None:
        session = self._owned(session_id, ctx)
        if session is not None:
            self._storage.sessions[session_id] = session.model_copy(update={"status": "inactive"})

    async def get_conversation_documents(
        self, conversation_id: uuid.UUID, ctx: RequestContext
    ) -> list[uuid.UUID]:
        owner, doc_ids = self._storage.conversations.get(conversation_id, (None, []))
        return list(doc_ids) if owner == ctx.user_id else []

    async def set_conversation_documents(
        self, conversation_id: uuid.UUID, document_ids: Sequence[uuid.UUID], ctx: RequestContext
    ) -> None:
        owner, _ = self._storage.conversations.get(conversation_id, (ctx.user_id, []))
        if owner == ctx.user_id:
            self._storage.conversations[conversation_id] = (ctx.user_id, list(document_ids))
