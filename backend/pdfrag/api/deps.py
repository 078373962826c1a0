"""FastAPI dependencies wiring repositories and the per-user RAG state."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend.pdfrag.api.auth import get_current_context
from backend.pdfrag.config import get_settings
from backend.pdfrag.db.context import RequestContext
from backend.pdfrag.db.engine import get_session
from backend.pdfrag.db.sql_repositories import SqlDocumentStore, SqlSessionStore
from backend.pdfrag.llm.client import get_llm_client
from backend.pdfrag.orchestration.service import RagService, RagServiceRegistry, build_registry
from backend.pdfrag.vectorstore.persistent import SqlChunkStore

_registry: RagServiceRegistry | None = None


async def get_registry() -> RagServiceRegistry:
    """Get the process-wide registry, building it on first use."""
    global _registry
    if _registry is None:
        settings = get_settings()
        _registry = build_registry(settings, await get_llm_client(settings))
    return _registry


async def get_rag_service(
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    session: Annotated[AsyncSession, Depends(get_session)],
    registry: Annotated[RagServiceRegistry, Depends(get_registry)],
) -> RagService:
    """RagService bound to this request's database session."""
    settings = registry.settings
    return RagService(
        ctx,
        registry.state_for(ctx.user_id),
        documents=SqlDocumentStore(session),
        chunks=SqlChunkStore(
            session,
            dimension=settings.embedding_dimension,
            batch_size=settings.upsert_batch_size,
            metrics=registry.metrics,
        ),
        sessions=SqlSessionStore(session),
        gateway=registry.gateway,
        llm=registry.llm,
        settings=settings,
        metrics=registry.metrics,
        registry=registry,
    )
