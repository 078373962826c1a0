"""Query and active-context endpoints."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from backend.pdfrag.api.deps import get_rag_service
from backend.pdfrag.models.answer import ChatTurn, GenerationConfig, PerformanceSnapshot, QueryResult
from backend.pdfrag.orchestration.service import RagService

router = APIRouter(tags=["qa"])


class QueryRequest(BaseModel):
    """Request body for POST /query."""

    query: str = Field(..., max_length=4000, description="User question")
    history: list[ChatTurn] = Field(default_factory=list)
    config: GenerationConfig | None = None


class ContextRequest(BaseModel):
    """Request body for PUT /context."""

    document_ids: list[uuid.UUID]
    conversation_id: uuid.UUID | None = None


class ContextResponse(BaseModel):
    """Active context after a change."""

    document_ids: list[uuid.UUID]
    session_id: uuid.UUID | None
    conversation_id: uuid.UUID | None
    loaded_chunks: int
    performance: PerformanceSnapshot


def _context_response(service: RagService) -> ContextResponse:
    state = service.state
    return ContextResponse(
        document_ids=list(state.active_document_ids),
        session_id=state.session_id,
        conversation_id=state.conversation_id,
        loaded_chunks=len(service.store),
        performance=state.tracker.snapshot(),
    )


@router.post("/query", response_model=QueryResult)
async def query(
    request: QueryRequest,
    service: Annotated[RagService, Depends(get_rag_service)],
) -> QueryResult:
    """Answer a question from the active documents, with citations."""
    return await service.query(request.query, history=request.history, config=request.config)


@router.get("/context", response_model=ContextResponse)
async def get_context(
    service: Annotated[RagService, Depends(get_rag_service)],
) -> ContextResponse:
    """Current active documents, session and performance counters."""
    return _context_response(service)


@router.put("/context", response_model=ContextResponse)
async def update_context(
    request: ContextRequest,
    service: Annotated[RagService, Depends(get_rag_service)],
) -> ContextResponse:
    """Replace the active document set, optionally linking a conversation."""
    if request.conversation_id is not None:
        await service.update_context_for_conversation(
            request.conversation_id, request.document_ids
        )
    else:
        await service.reload_context(request.document_ids)
    return _context_response(service)


@router.post("/context/restore", response_model=ContextResponse)
async def restore_context(
    service: Annotated[RagService, Depends(get_rag_service)],
) -> ContextResponse:
    """Reload the most recently used active session."""
    await service.restore_session()
    return _context_response(service)


@router.delete("/context/documents/{document_id}", response_model=ContextResponse)
async def remove_from_context(
    document_id: uuid.UUID,
    service: Annotated[RagService, Depends(get_rag_service)],
) -> ContextResponse:
    """Drop one document from the active set without deleting it."""
    await service.remove_document(document_id)
    return _context_response(service)


@router.delete("/context", status_code=status.HTTP_204_NO_CONTENT)
async def clear_context(
    service: Annotated[RagService, Depends(get_rag_service)],
) -> None:
    """Drop the in-memory context; persisted documents are kept."""
    await service.clear()
