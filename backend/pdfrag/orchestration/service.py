"""RAG service - ingestion, querying and active-document context per user.

Write path: PDF bytes -> extractor -> chunker -> embedding gateway -> persistent
chunk store + in-memory vector store.

Read path: query -> retriever (planner, both stores) -> context assembler ->
answer generator -> QueryResult with citations and a performance snapshot.

The in-memory store is owned by a RagSessionState held in RagServiceRegistry,
one per user. RagService itself is cheap and built per request around the
request's repositories.
"""

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from backend.pdfrag.citations.assembler import assemble
from backend.pdfrag.config import Settings, get_settings
from backend.pdfrag.db.context import RequestContext
from backend.pdfrag.db.repositories import ChunkStore, DocumentStore, SessionStore
from backend.pdfrag.docs.chunker import ChunkingConfig, chunk_document
from backend.pdfrag.docs.extractor import extract_pdf
from backend.pdfrag.embeddings.gateway import (
    BatchPolicy,
    CancelToken,
    EmbeddingGateway,
    is_zero_vector,
)
from backend.pdfrag.embeddings.provider import EmbeddingProvider, get_embedding_provider
from backend.pdfrag.errors import (
    DocumentLimitExceededError,
    EmbeddingProviderError,
    EmptyQueryError,
    ExtractionError,
)
from backend.pdfrag.llm.classifiers import HeuristicClassifier, ResponseClassifier
from backend.pdfrag.llm.client import LLMClient
from backend.pdfrag.models.answer import ChatTurn, GenerationConfig, QueryResult
from backend.pdfrag.models.docs import Chunk, Document, SourceFile
from backend.pdfrag.models.session import (
    DeleteResult,
    FailedSource,
    IngestedDocument,
    IngestionReport,
)
from backend.pdfrag.orchestration.generator import AnswerGenerator
from backend.pdfrag.retrieval.planner import QueryPlanner
from backend.pdfrag.retrieval.retriever import RetrievalConfig, Retriever
from backend.pdfrag.utils.logging import StructuredRagLogger
from backend.pdfrag.utils.metrics import PerformanceTracker, PrometheusRagMetrics, RagMetrics
from backend.pdfrag.utils.retry import RetryPolicy
from backend.pdfrag.vectorstore.memory import InMemoryVectorStore

logger = logging.getLogger(__name__)


@dataclass
class RagSessionState:
    """Per-user state that outlives a single request."""

    store: InMemoryVectorStore
    tracker: PerformanceTracker
    active_document_ids: list[UUID] = field(default_factory=list)
    session_id: UUID | None = None
    conversation_id: UUID | None = None

    async def forget(self, document_id: UUID) -> int:
        """Drop a document from the in-memory tier and the active set."""
        removed = await self.store.remove(document_id)
        if document_id in self.active_document_ids:
            self.active_document_ids.remove(document_id)
        return removed


class RagServiceRegistry:
    """Holds one RagSessionState per user plus the shared providers."""

    def __init__(
        self,
        gateway: EmbeddingGateway,
        llm: LLMClient,
        *,
        settings: Settings | None = None,
        metrics: RagMetrics | None = None,
    ) -> None:
        self.gateway = gateway
        self.llm = llm
        self.settings = settings or get_settings()
        self.metrics = metrics or RagMetrics()
        self._states: dict[UUID, RagSessionState] = {}

    def state_for(self, user_id: UUID) -> RagSessionState:
        state = self._states.get(user_id)
        if state is None:
            state = RagSessionState(
                store=InMemoryVectorStore(self.gateway),
                tracker=PerformanceTracker(self.metrics),
            )
            self._states[user_id] = state
        return state

    def discard(self, user_id: UUID) -> None:
        """Forget a user's state; the next request starts from an empty store."""
        self._states.pop(user_id, None)

    async def forget_document(self, document_id: UUID) -> None:
        """Drop a deleted document from every user's loaded context."""
        for state in list(self._states.values()):
            await state.forget(document_id)


def build_gateway(
    settings: Settings,
    provider: EmbeddingProvider | None = None,
    *,
    metrics: RagMetrics | None = None,
) -> EmbeddingGateway:
    """Embedding gateway with document and query retry policies from settings."""
    metrics = metrics or RagMetrics()
    log = StructuredRagLogger()
    return EmbeddingGateway(
        provider or get_embedding_provider(settings),
        dimension=settings.embedding_dimension,
        retry=RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            initial_delay_ms=settings.retry_initial_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            metrics=metrics,
            logger=log,
        ),
        query_retry=RetryPolicy(
            max_attempts=settings.query_retry_max_attempts,
            initial_delay_ms=settings.retry_initial_delay_ms,
            max_delay_ms=settings.query_retry_max_delay_ms,
            metrics=metrics,
            logger=log,
        ),
        batch_policy=BatchPolicy.from_settings(settings),
        metrics=metrics,
        logger=log,
    )


def build_registry(
    settings: Settings, llm: LLMClient, provider: EmbeddingProvider | None = None
) -> RagServiceRegistry:
    """Registry wired to Prometheus metrics."""
    metrics = PrometheusRagMetrics()
    return RagServiceRegistry(
        build_gateway(settings, provider, metrics=metrics),
        llm,
        settings=settings,
        metrics=metrics,
    )


class RagService:
    """All RAG operations for one user's current session."""

    def __init__(
        self,
        ctx: RequestContext,
        state: RagSessionState,
        *,
        documents: DocumentStore,
        chunks: ChunkStore,
        sessions: SessionStore,
        gateway: EmbeddingGateway,
        llm: LLMClient,
        settings: Settings | None = None,
        classifier: ResponseClassifier | None = None,
        metrics: RagMetrics | None = None,
        logger: StructuredRagLogger | None = None,
        registry: RagServiceRegistry | None = None,
    ) -> None:
        self.ctx = ctx
        self.state = state
        self._registry = registry
        self.settings = settings or get_settings()
        self._documents = documents
        self._chunks = chunks
        self._sessions = sessions
        self._gateway = gateway
        self._classifier = classifier or HeuristicClassifier()
        self._metrics = metrics or RagMetrics()
        self._logger = logger or StructuredRagLogger()
        self.chunking = ChunkingConfig.from_settings(self.settings)

        self.retriever = Retriever(
            state.store,
            gateway,
            chunk_store=chunks,
            planner=QueryPlanner(self._classifier),
            config=RetrievalConfig.from_settings(self.settings),
            logger=self._logger,
        )
        self.generator = AnswerGenerator(
            llm,
            state.store,
            classifier=self._classifier,
            retry=RetryPolicy(
                max_attempts=self.settings.llm_retry_max_attempts,
                initial_delay_ms=self.settings.retry_initial_delay_ms,
                max_delay_ms=self.settings.retry_max_delay_ms,
                metrics=self._metrics,
                logger=self._logger,
            ),
            history_limit=self.settings.history_limit,
        )

    @property
    def store(self) -> InMemoryVectorStore:
        return self.state.store

    def default_generation_config(self) -> GenerationConfig:
        s = self.settings
        return GenerationConfig(
            model=s.openai_model,
            temperature=s.temperature,
            top_p=s.top_p,
            max_output_tokens=s.max_output_tokens,
            response_style=s.response_style,
            show_thinking_process=s.show_thinking_process,
        )

    def _session_config(self) -> dict[str, Any]:
        s = self.settings
        return {
            "chunk_size": s.chunk_size,
            "chunk_overlap": s.chunk_overlap,
            "embedding_model": s.embedding_model,
            "retrieval_k": s.retrieval_k,
            "dedup_strategy": s.dedup_strategy,
        }

    def _check_limit(self, count: int) -> None:
        if count > self.settings.max_documents:
            raise DocumentLimitExceededError(
                f"{count} documents exceeds the limit of {self.settings.max_documents}",
                stage="ingestion",
            )

    async def _sync_session(self, conversation_id: UUID | None = None) -> None:
        state = self.state
        if conversation_id is not None and conversation_id != state.conversation_id:
            # A different conversation gets its own session
            if state.session_id is not None:
                await self._sessions.close_session(state.session_id, self.ctx)
                state.session_id = None
            state.conversation_id = conversation_id
        if state.session_id is None:
            session = await self._sessions.create_session(
                state.active_document_ids,
                self._session_config(),
                self.ctx,
                conversation_id=state.conversation_id,
                model_version=self.settings.openai_model,
            )
            state.session_id = session.session_id
        else:
            await self._sessions.update_session_documents(
                state.session_id, state.active_document_ids, self.ctx
            )

    def _activate(self, document_id: UUID) -> None:
        if document_id not in self.state.active_document_ids:
            self.state.active_document_ids.append(document_id)

    async def _index_document(
        self,
        document_id: UUID,
        title: str,
        text: str,
        cancel_token: CancelToken | None = None,
    ) -> IngestedDocument:
        """Chunk, embed and store one document in both tiers.

        Re-running on the same document replaces its chunks in place.
        """
        chunks, degraded = await self._persist_chunks(document_id, title, text, cancel_token)
        await self.store.upsert(chunks)
        return IngestedDocument(
            document_id=document_id,
            title=title,
            chunk_count=len(chunks),
            degraded_chunks=degraded,
        )

    async def _persist_chunks(
        self,
        document_id: UUID,
        title: str,
        text: str,
        cancel_token: CancelToken | None = None,
    ) -> tuple[list[Chunk], int]:
        """Chunk and embed a document into the persistent tier only."""
        drafts = chunk_document(text, config=self.chunking)
        if not drafts:
            raise ExtractionError(f"{title} produced no chunks", stage="chunking")

        vectors = await self._gateway.embed_batch(
            [draft.content for draft in drafts], cancel_token=cancel_token
        )
        chunks = [
            Chunk(
                document_id=document_id,
                document_title=title,
                chunk_index=draft.index,
                content=draft.content,
                page=draft.page,
                contains_equations=draft.contains_equations,
                chunk_type=draft.chunk_type,
                embedding=vector,
            )
            for draft, vector in zip(drafts, vectors)
        ]
        degraded = sum(1 for vector in vectors if is_zero_vector(vector))
        if degraded:
            self._logger.log_degraded(
                "ingestion",
                "chunks stored with zero-vector embeddings",
                document_id=str(document_id),
                degraded_chunks=degraded,
            )

        await self._chunks.upsert_chunks(document_id, chunks, vectors, self.ctx)
        self._metrics.inc_ingested_chunks(len(chunks))
        return chunks, degraded

    async def ingest_documents(
        self,
        files: Sequence[SourceFile],
        *,
        conversation_id: UUID | None = None,
        is_public: bool = False,
        cancel_token: CancelToken | None = None,
    ) -> IngestionReport:
        """Extract, chunk, embed and store PDFs, reporting partial success.

        A file that cannot be extracted or embedded is recorded as failed and
        the rest continue.

        Raises:
            DocumentLimitExceededError: If the active set would exceed max_documents
            IngestionCancelledError: If cancel_token is cancelled between batches
        """
        self._check_limit(len(self.state.active_document_ids) + len(files))
        report = IngestionReport()

        for source in files:
            if cancel_token is not None:
                cancel_token.throw_if_cancelled()
            try:
                extracted = extract_pdf(source.data, title=source.name)
                document = await self._documents.create_document(
                    extracted, self.ctx, is_public=is_public
                )
                ingested = await self._index_document(
                    document.document_id, document.title, extracted.text, cancel_token
                )
            except (ExtractionError, EmbeddingProviderError) as e:
                logger.warning(
                    f"Skipping {source.name}: {e}",
                    extra={"structured": {"file": source.name, "stage": e.stage}},
                )
                report.failed.append(FailedSource(name=source.name, reason=e.user_message))
                continue

            self._activate(ingested.document_id)
            report.processed.append(ingested)

        if report.processed:
            if conversation_id is not None:
                # Conversation row must exist before a session references it
                await self._sessions.set_conversation_documents(
                    conversation_id, self.state.active_document_ids, self.ctx
                )
            await self._sync_session(conversation_id)
        report.session_id = self.state.session_id

        logger.info(
            f"Ingestion finished: {report.summary}",
            extra={
                "structured": {
                    "processed": len(report.processed),
                    "failed": len(report.failed),
                    "session_id": str(report.session_id) if report.session_id else None,
                }
            },
        )
        return report

    async def reprocess_document(self, document_id: UUID, source: SourceFile) -> IngestedDocument:
        """Replace an owned document's content with a re-uploaded file.

        Chunks beyond the new chunk count are trimmed from the persistent tier.

        Raises:
            DocumentNotFoundError: If the document does not exist
            DocumentAccessDeniedError: If the caller is not the owner
            ExtractionError: If the new file has no text
        """
        extracted = extract_pdf(source.data, title=source.name)
        document = await self._documents.replace_content(document_id, extracted, self.ctx)
        await self.store.remove(document_id)
        ingested = await self._index_document(document_id, document.title, extracted.text)
        self._activate(document_id)
        await self._sync_session()
        return ingested

    async def query(
        self,
        query: str,
        *,
        history: Sequence[ChatTurn] = (),
        config: GenerationConfig | None = None,
    ) -> QueryResult:
        """Answer a question from the active documents.

        Performance counters are updated whether the query succeeds or fails.

        Raises:
            EmptyQueryError: If the query is blank
            NoDocumentsProcessedError: If nothing is loaded; the LLM is not called
            NoRelevantInformationError: If retrieval found nothing
            GenerationError: If the LLM call failed
        """
        config = config or self.default_generation_config()
        start = time.perf_counter()
        category = "general"
        success = False
        citations = 0
        try:
            if not query.strip():
                raise EmptyQueryError("empty query", stage="query")
            category = self._classifier.classify_query(query).category

            retrieval = await self.retriever.retrieve(
                query, self.ctx, active_document_ids=self.state.active_document_ids or None
            )
            context = assemble(retrieval.chunks)
            answer = await self.generator.generate(query, context, history, config)

            if self.state.session_id is not None:
                await self._sessions.touch_session(self.state.session_id, self.ctx)
            success = True
            citations = len(answer.citations)
        finally:
            latency_ms = (time.perf_counter() - start) * 1000
            self.state.tracker.record_query(
                category=category, latency_ms=latency_ms, success=success, citations=citations
            )

        return QueryResult(
            text=answer.text,
            thinking_process=answer.thinking_process,
            citations=answer.citations,
            session_id=self.state.session_id,
            used_config=config,
            degraded_retrieval=retrieval.degraded,
            performance=self.state.tracker.snapshot(),
        )

    async def list_documents(self) -> list[Document]:
        """Documents the caller may use: own, public and shared."""
        return await self._documents.list_documents(self.ctx)

    async def remove_document(self, document_id: UUID) -> int:
        """Drop a document from the active context without deleting it.

        Returns:
            Number of in-memory entries removed
        """
        was_active = document_id in self.state.active_document_ids
        removed = await self.state.forget(document_id)
        if was_active and self.state.session_id is not None:
            await self._sync_session()
        return removed

    async def delete_document(self, document_id: UUID) -> DeleteResult:
        """Delete an owned document everywhere.

        The document store scrubs it from conversations and sessions and deletes
        its chunks; this also drops it from the in-memory tier of every loaded
        context the registry knows about.
        """
        result = await self._documents.delete_document(document_id, self.ctx)
        await self.state.forget(document_id)
        if self._registry is not None:
            await self._registry.forget_document(document_id)
        logger.info(
            f"Deleted document {document_id}",
            extra={
                "structured": {
                    "document_id": str(document_id),
                    "freed_bytes": result.freed_bytes,
                    "affected_conversations": result.affected_conversations,
                }
            },
        )
        return result

    async def reload_context(
        self, document_ids: Sequence[UUID], *, conversation_id: UUID | None = None
    ) -> int:
        """Rebuild the in-memory tier from persisted documents.

        Persisted chunks with embeddings are loaded as-is; documents whose chunks
        are missing are re-chunked and re-embedded from their stored text.

        Returns:
            Number of in-memory entries after the reload

        Raises:
            DocumentLimitExceededError: If more than max_documents are requested
            DocumentNotFoundError: If a document does not exist
            DocumentAccessDeniedError: If a document is not readable by the caller
        """
        unique_ids = list(dict.fromkeys(document_ids))
        self._check_limit(len(unique_ids))

        # Resolve everything first so a rejected id leaves the current context alone
        loaded: list[tuple[UUID, list[Chunk]]] = []
        for document_id in unique_ids:
            document = await self._documents.get_document(document_id, self.ctx)
            chunks = await self._chunks.list_chunks(document_id, self.ctx)
            if not chunks or not all(chunk.embedding for chunk in chunks):
                content = await self._documents.get_document_content(document_id, self.ctx)
                chunks, _ = await self._persist_chunks(document_id, document.title, content)
            loaded.append((document_id, chunks))

        await self.store.clear()
        self.state.active_document_ids = []
        for document_id, chunks in loaded:
            await self.store.upsert(chunks)
            self._activate(document_id)

        await self._sync_session(conversation_id)
        return len(self.store)

    async def update_context_for_conversation(
        self, conversation_id: UUID, document_ids: Sequence[UUID]
    ) -> int:
        """Load a document set and point a conversation at it."""
        loaded = await self.reload_context(document_ids, conversation_id=conversation_id)
        await self._sessions.set_conversation_documents(
            conversation_id, list(self.state.active_document_ids), self.ctx
        )
        return loaded

    async def restore_session(self) -> bool:
        """Reload the most recently used active session, if any.

        Returns:
            True if a session was restored
        """
        session = await self._sessions.get_active_session(self.ctx)
        if session is None:
            return False
        self.state.session_id = session.session_id
        self.state.conversation_id = session.conversation_id
        await self.reload_context(session.document_ids)
        return True

    async def clear(self) -> None:
        """Drop in-memory state and the active set; persisted chunks are kept."""
        await self.store.clear()
        self.state.active_document_ids = []
        if self.state.session_id is not None:
            await self._sessions.close_session(self.state.session_id, self.ctx)
        self.state.session_id = None
        self.state.conversation_id = None
