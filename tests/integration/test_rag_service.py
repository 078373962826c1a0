"""Integration tests for RagService over in-memory repositories.

Real PDF bytes go through extraction, chunking, the deterministic embedding
provider and the stub LLM; only the database is replaced.
"""

import uuid

import pytest

from backend.pdfrag.config import Settings
from backend.pdfrag.db.context import RequestContext
from backend.pdfrag.db.inmemory import (
    InMemoryChunkStore,
    InMemoryDocumentStore,
    InMemorySessionStore,
    InMemoryStorage,
)
from backend.pdfrag.embeddings.gateway import CancelToken, EmbeddingGateway
from backend.pdfrag.errors import (
    DocumentAccessDeniedError,
    DocumentLimitExceededError,
    DocumentNotFoundError,
    EmptyQueryError,
    IngestionCancelledError,
    NoDocumentsProcessedError,
)
from backend.pdfrag.llm.client import DeterministicStubClient
from backend.pdfrag.models.docs import SourceFile
from backend.pdfrag.orchestration.service import RagService, RagSessionState
from backend.pdfrag.utils.metrics import PerformanceTracker
from backend.pdfrag.vectorstore.memory import InMemoryVectorStore
from tests.helpers import pdf_bytes

WAVE_TEXT = "The wave equation governs wave motion on a string."


def make_settings(**overrides) -> Settings:
    values = dict(
        openai_api_key=None,
        chunk_size=200,
        chunk_overlap=40,
        math_chunk_size=240,
        math_chunk_overlap=60,
        dense_math_chunk_overlap=80,
        retry_initial_delay_ms=1,
        retry_max_delay_ms=2,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def pdf(name: str, *pages: str) -> SourceFile:
    return SourceFile(name=name, data=pdf_bytes(list(pages)))


def long_pdf(name: str, pages: int = 8) -> SourceFile:
    return pdf(name, *(f"Section {i} covers boundary value case {i}." for i in range(pages)))


class Harness:
    """Builds RagService instances that share storage, like requests sharing a database."""

    def __init__(
        self, gateway: EmbeddingGateway, storage: InMemoryStorage, settings: Settings
    ) -> None:
        self.gateway = gateway
        self.storage = storage
        self.settings = settings
        self.llm = DeterministicStubClient()

    def new_state(self) -> RagSessionState:
        return RagSessionState(
            store=InMemoryVectorStore(self.gateway), tracker=PerformanceTracker()
        )

    def service(self, ctx: RequestContext, state: RagSessionState | None = None) -> RagService:
        return RagService(
            ctx,
            state or self.new_state(),
            documents=InMemoryDocumentStore(self.storage),
            chunks=InMemoryChunkStore(self.storage, dimension=self.gateway.dimension),
            sessions=InMemorySessionStore(self.storage),
            gateway=self.gateway,
            llm=self.llm,
            settings=self.settings,
        )


@pytest.fixture
def harness(gateway: EmbeddingGateway, storage: InMemoryStorage) -> Harness:
    return Harness(gateway, storage, make_settings())


@pytest.fixture
def service(harness: Harness, ctx: RequestContext) -> RagService:
    return harness.service(ctx)


class TestIngestion:
    """Multi-file ingestion with partial failure."""

    @pytest.mark.asyncio
    async def test_good_files_ingest_and_bad_files_are_reported(
        self, service: RagService, storage: InMemoryStorage
    ) -> None:
        report = await service.ingest_documents(
            [
                pdf("physics.pdf", WAVE_TEXT),
                SourceFile(name="broken.pdf", data=b"not a pdf"),
                long_pdf("notes.pdf"),
            ]
        )

        assert [d.title for d in report.processed] == ["physics.pdf", "notes.pdf"]
        assert [f.name for f in report.failed] == ["broken.pdf"]
        assert report.summary.startswith("processed 2 of 3 files; failed: broken.pdf (")

        ids = [d.document_id for d in report.processed]
        assert service.state.active_document_ids == ids
        assert len(service.store) == sum(d.chunk_count for d in report.processed)
        for ingested in report.processed:
            assert len(storage.chunks[ingested.document_id]) == ingested.chunk_count
            assert ingested.degraded_chunks == 0

        session = storage.sessions[report.session_id]
        assert session.document_ids == ids
        assert session.status == "active"

    @pytest.mark.asyncio
    async def test_long_document_gets_several_chunks_with_pages(
        self, service: RagService, storage: InMemoryStorage
    ) -> None:
        report = await service.ingest_documents([long_pdf("notes.pdf")])

        ingested = report.processed[0]
        assert ingested.chunk_count > 1
        chunks = [chunk for _, chunk in storage.chunks[ingested.document_id].values()]
        assert chunks[-1].page is not None
        assert all(len(chunk.embedding) == service._gateway.dimension for chunk in chunks)

    @pytest.mark.asyncio
    async def test_all_files_failing_creates_no_session(self, service: RagService) -> None:
        report = await service.ingest_documents([SourceFile(name="empty.pdf", data=b"")])

        assert report.processed == []
        assert report.session_id is None
        assert service.state.active_document_ids == []

    @pytest.mark.asyncio
    async def test_document_limit_is_checked_up_front(
        self, gateway: EmbeddingGateway, storage: InMemoryStorage, ctx
    ) -> None:
        service = Harness(gateway, storage, make_settings(max_documents=1)).service(ctx)

        with pytest.raises(DocumentLimitExceededError):
            await service.ingest_documents([pdf("a.pdf", "alpha"), pdf("b.pdf", "beta")])

        assert storage.documents == {}

    @pytest.mark.asyncio
    async def test_cancelled_ingestion_stops(
        self, service: RagService, storage: InMemoryStorage
    ) -> None:
        token = CancelToken()
        token.cancel()

        with pytest.raises(IngestionCancelledError):
            await service.ingest_documents([pdf("a.pdf", WAVE_TEXT)], cancel_token=token)

        assert storage.documents == {}

    @pytest.mark.asyncio
    async def test_conversation_gets_documents_and_its_own_session(
        self, service: RagService, storage: InMemoryStorage, ctx
    ) -> None:
        first, second = uuid.uuid4(), uuid.uuid4()

        report_a = await service.ingest_documents(
            [pdf("a.pdf", "alpha text")], conversation_id=first
        )
        report_b = await service.ingest_documents(
            [pdf("b.pdf", "beta text")], conversation_id=second
        )

        assert report_a.session_id != report_b.session_id
        assert storage.sessions[report_a.session_id].status == "inactive"
        assert storage.sessions[report_b.session_id].conversation_id == second

        sessions = InMemorySessionStore(storage)
        assert await sessions.get_conversation_documents(first, ctx) == [
            report_a.processed[0].document_id
        ]
        assert len(await sessions.get_conversation_documents(second, ctx)) == 2

    @pytest.mark.asyncio
    async def test_reprocess_replaces_chunks(
        self, service: RagService, storage: InMemoryStorage
    ) -> None:
        report = await service.ingest_documents([long_pdf("notes.pdf")])
        document_id = report.processed[0].document_id

        ingested = await service.reprocess_document(document_id, pdf("notes-v2.pdf", WAVE_TEXT))

        assert ingested.chunk_count == 1
        assert ingested.title == "notes-v2.pdf"
        assert list(storage.chunks[document_id]) == [0]
        assert len(service.store) == 1

    @pytest.mark.asyncio
    async def test_reprocess_requires_owner(self, harness: Harness, ctx, other_ctx) -> None:
        report = await harness.service(ctx).ingest_documents(
            [pdf("a.pdf", WAVE_TEXT)], is_public=True
        )

        with pytest.raises(DocumentAccessDeniedError):
            await harness.service(other_ctx).reprocess_document(
                report.processed[0].document_id, pdf("b.pdf", "hijack")
            )


class TestQuery:
    """End-to-end question answering."""

    @pytest.mark.asyncio
    async def test_query_answers_with_citations_and_counts(
        self, service: RagService, storage: InMemoryStorage
    ) -> None:
        report = await service.ingest_documents([pdf("physics.pdf", WAVE_TEXT)])
        before = storage.sessions[report.session_id].last_accessed_at

        result = await service.query("Explain the wave equation on a string")

        assert "stub answer" in result.text
        assert "REFERENSI:" in result.text
        assert result.citations
        assert result.citations[0].source == "physics.pdf"
        assert result.session_id == report.session_id
        assert result.performance.queries == 1
        assert result.performance.successful_queries == 1
        assert result.performance.document_citations == len(result.citations)
        assert storage.sessions[report.session_id].last_accessed_at >= before

    @pytest.mark.asyncio
    async def test_query_without_documents_fails_and_is_counted(self, service: RagService) -> None:
        with pytest.raises(NoDocumentsProcessedError):
            await service.query("what is the wave equation")

        snapshot = service.state.tracker.snapshot()
        assert snapshot.queries == 1
        assert snapshot.failed_queries == 1

    @pytest.mark.asyncio
    async def test_blank_query_rejected(self, service: RagService) -> None:
        await service.ingest_documents([pdf("physics.pdf", WAVE_TEXT)])

        with pytest.raises(EmptyQueryError):
            await service.query("   ")


class TestContext:
    """Active context reload, restore, removal and deletion."""

    @pytest.mark.asyncio
    async def test_clear_then_reload_uses_stored_chunks(
        self, service: RagService, storage: InMemoryStorage
    ) -> None:
        report = await service.ingest_documents([long_pdf("notes.pdf")])
        document_id = report.processed[0].document_id
        old_session = report.session_id

        await service.clear()
        assert service.store.is_empty
        assert storage.sessions[old_session].status == "inactive"

        loaded = await service.reload_context([document_id])

        assert loaded == report.processed[0].chunk_count
        assert service.state.active_document_ids == [document_id]
        assert service.state.session_id not in (None, old_session)

    @pytest.mark.asyncio
    async def test_reload_reindexes_when_chunks_are_missing(
        self, service: RagService, storage: InMemoryStorage, ctx
    ) -> None:
        report = await service.ingest_documents([pdf("physics.pdf", WAVE_TEXT)])
        document_id = report.processed[0].document_id
        await InMemoryChunkStore(storage).delete_chunks(document_id, ctx)

        loaded = await service.reload_context([document_id])

        assert loaded == 1
        assert len(storage.chunks[document_id]) == 1

    @pytest.mark.asyncio
    async def test_reload_rejects_too_many_documents(
        self, gateway: EmbeddingGateway, storage: InMemoryStorage, ctx
    ) -> None:
        service = Harness(gateway, storage, make_settings(max_documents=2)).service(ctx)

        with pytest.raises(DocumentLimitExceededError):
            await service.reload_context([uuid.uuid4() for _ in range(3)])

    @pytest.mark.asyncio
    async def test_rejected_reload_keeps_current_context(
        self, service: RagService, storage: InMemoryStorage
    ) -> None:
        report = await service.ingest_documents([pdf("physics.pdf", WAVE_TEXT)])
        document_id = report.processed[0].document_id

        with pytest.raises(DocumentNotFoundError):
            await service.reload_context([uuid.uuid4(), document_id])

        assert len(service.store) == 1
        assert service.state.active_document_ids == [document_id]
        assert storage.sessions[report.session_id].document_ids == [document_id]
        answer = await service.query("What governs wave motion?")
        assert answer.citations

    @pytest.mark.asyncio
    async def test_restore_session_in_a_fresh_state(self, harness: Harness, ctx) -> None:
        report = await harness.service(ctx).ingest_documents([pdf("physics.pdf", WAVE_TEXT)])

        restored = harness.service(ctx)
        assert await restored.restore_session() is True

        assert restored.state.session_id == report.session_id
        assert restored.state.active_document_ids == [report.processed[0].document_id]
        assert len(restored.store) == 1

    @pytest.mark.asyncio
    async def test_restore_without_session(self, service: RagService) -> None:
        assert await service.restore_session() is False

    @pytest.mark.asyncio
    async def test_update_context_for_conversation(
        self, service: RagService, storage: InMemoryStorage, ctx
    ) -> None:
        report = await service.ingest_documents(
            [pdf("a.pdf", "alpha text"), pdf("b.pdf", "beta text")]
        )
        second = report.processed[1].document_id
        conversation_id = uuid.uuid4()

        await service.update_context_for_conversation(conversation_id, [second])

        assert service.state.active_document_ids == [second]
        assert service.state.conversation_id == conversation_id
        sessions = InMemorySessionStore(storage)
        assert await sessions.get_conversation_documents(conversation_id, ctx) == [second]

    @pytest.mark.asyncio
    async def test_remove_document_keeps_it_stored(
        self, service: RagService, storage: InMemoryStorage
    ) -> None:
        report = await service.ingest_documents(
            [pdf("a.pdf", "alpha text"), pdf("b.pdf", "beta text")]
        )
        first, second = (d.document_id for d in report.processed)

        removed = await service.remove_document(first)

        assert removed == 1
        assert service.state.active_document_ids == [second]
        assert first in storage.documents
        assert storage.sessions[report.session_id].document_ids == [second]

    @pytest.mark.asyncio
    async def test_delete_document_everywhere(
        self, service: RagService, storage: InMemoryStorage, ctx
    ) -> None:
        first_conversation, second_conversation = uuid.uuid4(), uuid.uuid4()
        report = await service.ingest_documents(
            [pdf("a.pdf", "alpha text")], conversation_id=first_conversation
        )
        document_id = report.processed[0].document_id
        await InMemorySessionStore(storage).set_conversation_documents(
            second_conversation, [document_id], ctx
        )

        result = await service.delete_document(document_id)

        assert result.affected_conversations == 2
        assert result.freed_bytes > 0
        assert document_id not in storage.documents
        assert document_id not in storage.chunks
        assert service.store.is_empty
        assert service.state.active_document_ids == []
        assert storage.sessions[report.session_id].document_ids == []
