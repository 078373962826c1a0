"""SQL implementations of the document and session repositories."""

import uuid
from collections.abc import Sequence
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.pdfrag.db.context import RequestContext
from backend.pdfrag.db.models import Conversation, Doc, DocChunk, RagSessionRow, utcnow
from backend.pdfrag.errors import DocumentAccessDeniedError, DocumentNotFoundError
from backend.pdfrag.models.docs import Document, ExtractedDocument
from backend.pdfrag.models.session import DeleteResult, RagSession


def can_read(doc: Doc, ctx: RequestContext) -> bool:
    """Owner, public, or explicitly shared with the caller."""
    if doc.user_id == ctx.user_id or doc.is_public:
        return True
    return doc.is_shared and str(ctx.user_id) in (doc.shared_with or [])


def to_document(doc: Doc) -> Document:
    return Document(
        document_id=doc.document_id,
        user_id=doc.user_id,
        title=doc.title,
        byte_size=doc.byte_size,
        page_count=doc.page_count,
        contains_equations=doc.contains_equations,
        is_public=doc.is_public,
        is_shared=doc.is_shared,
        created_at=doc.created_at,
    )


def to_session(row: RagSessionRow) -> RagSession:
    return RagSession(
        session_id=row.session_id,
        user_id=row.user_id,
        document_ids=[uuid.UUID(d) for d in row.document_ids],
        conversation_id=row.conversation_id,
        config=row.config,
        status="active" if row.status == "active" else "inactive",
        model_version=row.model_version,
        last_accessed_at=row.last_accessed_at,
    )


class SqlDocumentStore:
    """SQL implementation of DocumentStore."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _load(self, document_id: uuid.UUID) -> Doc:
        doc = await self._session.get(Doc, document_id, populate_existing=True)
        if doc is None:
            raise DocumentNotFoundError(f"document {document_id} not found", stage="documents")
        return doc

    async def _load_owned(self, document_id: uuid.UUID, ctx: RequestContext) -> Doc:
        doc = await self._load(document_id)
        if doc.user_id != ctx.user_id:
            raise DocumentAccessDeniedError(
                f"user {ctx.user_id} does not own document {document_id}", stage="documents"
            )
        return doc

    async def _load_readable(self, document_id: uuid.UUID, ctx: RequestContext) -> Doc:
        doc = await self._load(document_id)
        if not can_read(doc, ctx):
            raise DocumentAccessDeniedError(
                f"user {ctx.user_id} cannot read document {document_id}", stage="documents"
            )
        return doc

    async def create_document(
        self, extracted: ExtractedDocument, ctx: RequestContext, *, is_public: bool = False
    ) -> Document:
        """Store a newly extracted document."""
        doc = Doc(
            user_id=ctx.user_id,
            title=extracted.title,
            content=extracted.text,
            byte_size=extracted.byte_size or len(extracted.text.encode("utf-8")),
            page_count=extracted.page_count,
            contains_equations=extracted.contains_equations,
            is_public=is_public,
            doc_metadata={"source": "pdf"},
        )
        self._session.add(doc)
        await self._session.commit()
        await self._session.refresh(doc)
        return to_document(doc)

    async def replace_content(
        self, document_id: uuid.UUID, extracted: ExtractedDocument, ctx: RequestContext
    ) -> Document:
        """Replace an owned document's text on re-upload."""
        doc = await self._load_owned(document_id, ctx)
        doc.title = extracted.title
        doc.content = extracted.text
        doc.byte_size = extracted.byte_size or len(extracted.text.encode("utf-8"))
        doc.page_count = extracted.page_count
        doc.contains_equations = extracted.contains_equations
        await self._session.commit()
        await self._session.refresh(doc)
        return to_document(doc)

    async def get_document(self, document_id: uuid.UUID, ctx: RequestContext) -> Document:
        """Get readable document metadata."""
        return to_document(await self._load_readable(document_id, ctx))

    async def get_document_content(self, document_id: uuid.UUID, ctx: RequestContext) -> str:
        """Get readable document text and touch last_accessed_at."""
        doc = await self._load_readable(document_id, ctx)
        doc.last_accessed_at = utcnow()
        content = doc.content
        await self._session.commit()
        return content

    async def delete_document(self, document_id: uuid.UUID, ctx: RequestContext) -> DeleteResult:
        """Delete an owned document and scrub references to it."""
        doc = await self._load_owned(document_id, ctx)
        freed_bytes = doc.byte_size
        key = str(document_id)

        conversations = await self._session.execute(
            select(Conversation).where(Conversation.user_id == ctx.user_id)
        )
        affected = 0
        for conversation in conversations.scalars().all():
            if key in conversation.document_context:
                conversation.document_context = [d for d in conversation.document_context if d != key]
                affected += 1

        sessions = await self._session.execute(
            select(RagSessionRow).where(RagSessionRow.user_id == ctx.user_id)
        )
        for row in sessions.scalars().all():
            if key in row.document_ids:
                row.document_ids = [d for d in row.document_ids if d != key]

        await self._session.execute(delete(DocChunk).where(DocChunk.document_id == document_id))
        await self._session.execute(delete(Doc).where(Doc.document_id == document_id))
        await self._session.commit()

        return DeleteResult(
            document_id=document_id,
            freed_bytes=freed_bytes,
            affected_conversations=affected,
        )

    async def list_documents(self, ctx: RequestContext) -> list[Document]:
        """List own, public and shared documents, newest first."""
        result = await self._session.execute(
            select(Doc)
            .where(or_(Doc.user_id == ctx.user_id, Doc.is_public.is_(True), Doc.is_shared.is_(True)))
            .order_by(Doc.created_at.desc())
        )
        return [to_document(doc) for doc in result.scalars().all() if can_read(doc, ctx)]


class SqlSessionStore:
    """SQL implementation of SessionStore."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_session(
        self,
        document_ids: Sequence[uuid.UUID],
        config: dict[str, Any],
        ctx: RequestContext,
        *,
        conversation_id: uuid.UUID | None = None,
        model_version: str | None = None,
    ) -> RagSession:
        """Create an active session."""
        row = RagSessionRow(
            user_id=ctx.user_id,
            document_ids=[str(d) for d in document_ids],
            conversation_id=conversation_id,
            config=config,
            status="active",
            model_version=model_version,
            last_accessed_at=utcnow(),
        )
        self._session.add(row)
        await self._session.commit()
        await self._session.refresh(row)
        return to_session(row)

    async def touch_session(self, session_id: uuid.UUID, ctx: RequestContext) -> None:
        """Update last_accessed_at of an owned session."""
        await self._session.execute(
            update(RagSessionRow)
            .where(RagSessionRow.session_id == session_id, RagSessionRow.user_id == ctx.user_id)
            .values(last_accessed_at=utcnow())
        )
        await self._session.commit()

    async def get_active_session(self, ctx: RequestContext) -> RagSession | None:
        """Most recently accessed active session."""
        result = await self._session.execute(
            select(RagSessionRow)
            .where(RagSessionRow.user_id == ctx.user_id, RagSessionRow.status == "active")
            .order_by(RagSessionRow.last_accessed_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return to_session(row) if row is not None else None

    async def update_session_documents(
        self, session_id: uuid.UUID, document_ids: Sequence[uuid.UUID], ctx: RequestContext
    ) -> None:
        """Replace the active document set and touch the session."""
        await self._session.execute(
            update(RagSessionRow)
            .where(RagSessionRow.session_id == session_id, RagSessionRow.user_id == ctx.user_id)
            .values(document_ids=[str(d) for d in document_ids], last_accessed_at=utcnow())
        )
        await self._session.commit()

    async def close_session(self, session_id: uuid.UUID, ctx: RequestContext) -> None:
        """Mark the session inactive."""
        await self._session.execute(
            update(RagSessionRow)
            .where(RagSessionRow.session_id == session_id, RagSessionRow.user_id == ctx.user_id)
            .values(status="inactive")
        )
        await self._session.commit()

    async def get_conversation_documents(
        self, conversation_id: uuid.UUID, ctx: RequestContext
    ) -> list[uuid.UUID]:
        """Document ids linked to an owned conversation."""
        conversation = await self._session.get(
            Conversation, conversation_id, populate_existing=True
        )
        if conversation is None or conversation.user_id != ctx.user_id:
            return []
        return [uuid.UUID(d) for d in conversation.document_context]

    async def set_conversation_documents(
        self, conversation_id: uuid.UUID, document_ids: Sequence[uuid.UUID], ctx: RequestContext
    ) -> None:
        """Replace an owned conversation's document context."""
        conversation = await self._session.get(Conversation, conversation_id)
        if conversation is None:
            conversation = Conversation(conversation_id=conversation_id, user_id=ctx.user_id)
            self._session.add(conversation)
        elif conversation.user_id != ctx.user_id:
            return
        conversation.document_context = [str(d) for d in document_ids]
        await self._session.commit()
