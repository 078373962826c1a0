"""Unit tests for the retriever."""

import uuid
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from backend.pdfrag.db.context import RequestContext
from backend.pdfrag.embeddings.gateway import EmbeddingGateway
from backend.pdfrag.errors import (
    EmptyQueryError,
    NoDocumentsProcessedError,
    NoRelevantInformationError,
    PersistentStoreUnavailableError,
)
from backend.pdfrag.models.retrieval import ScoredChunk, SearchMode, SearchResult
from backend.pdfrag.retrieval.retriever import RetrievalConfig, Retriever, fingerprint
from backend.pdfrag.vectorstore.memory import InMemoryVectorStore
from tests.helpers import index_chunks, make_chunk

WAVE_TEXT = "The wave equation governs wave motion on a string."

# No word characters, so the deterministic provider embeds it as a zero vector
UNEMBEDDABLE_QUERY = "???"


def scored(
    content: str, *, score: float = 0.7, mode: SearchMode = SearchMode.SERVER_VECTOR
) -> ScoredChunk:
    return ScoredChunk(
        document_id=uuid.uuid4(),
        document_title="stored.pdf",
        chunk_index=0,
        content=content,
        score=score,
        mode=mode,
    )


def persistent_store(
    result: SearchResult | None = None, error: Exception | None = None
) -> AsyncMock:
    store = AsyncMock()
    if error is not None:
        store.vector_search.side_effect = error
    else:
        store.vector_search.return_value = result or SearchResult(mode=SearchMode.KEYWORD)
    return store


def blind(store: InMemoryVectorStore) -> InMemoryVectorStore:
    """Make every in-memory search come back empty."""
    store.search = AsyncMock(return_value=[])  # type: ignore[method-assign]
    store.max_marginal_relevance_search = AsyncMock(return_value=[])  # type: ignore[method-assign]
    return store


@pytest.fixture
def doc_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest_asyncio.fixture
async def physics_store(
    vector_store: InMemoryVectorStore, gateway: EmbeddingGateway, doc_id: uuid.UUID
) -> InMemoryVectorStore:
    """English-only notes: one chunk on the wave equation and two unrelated ones."""
    await index_chunks(
        vector_store,
        gateway,
        [
            make_chunk("Bread dough rises when yeast ferments sugar.", document_id=doc_id, index=0),
            make_chunk(WAVE_TEXT, document_id=doc_id, index=1, title="physics.pdf"),
            make_chunk("Tax returns are due at the end of April.", document_id=doc_id, index=2),
        ],
    )
    return vector_store


@pytest.mark.asyncio
async def test_indonesian_query_finds_english_chunk(
    physics_store: InMemoryVectorStore, gateway: EmbeddingGateway, ctx: RequestContext
) -> None:
    """persamaan gelombang is expanded to wave equation, which finds the English chunk."""
    retriever = Retriever(physics_store, gateway)

    result = await retriever.retrieve("persamaan gelombang", ctx)

    assert any("wave equation" in variant for variant in result.variants)
    assert result.chunks[0].content == WAVE_TEXT
    assert result.modes == [SearchMode.MEMORY_SIMILARITY]
    assert result.degraded is False


@pytest.mark.asyncio
async def test_retrieval_is_idempotent(
    physics_store: InMemoryVectorStore, gateway: EmbeddingGateway, ctx: RequestContext
) -> None:
    retriever = Retriever(physics_store, gateway)

    first = await retriever.retrieve("vibrating string", ctx)
    second = await retriever.retrieve("vibrating string", ctx)

    assert [c.content for c in first.chunks] == [c.content for c in second.chunks]
    assert [c.score for c in first.chunks] == [c.score for c in second.chunks]


@pytest.mark.asyncio
async def test_empty_store_fails_before_searching(
    vector_store: InMemoryVectorStore, gateway: EmbeddingGateway, ctx: RequestContext
) -> None:
    chunk_store = persistent_store()
    retriever = Retriever(vector_store, gateway, chunk_store=chunk_store)

    with pytest.raises(NoDocumentsProcessedError):
        await retriever.retrieve("anything at all", ctx)
    chunk_store.vector_search.assert_not_awaited()


@pytest.mark.asyncio
async def test_blank_query_is_rejected(
    physics_store: InMemoryVectorStore, gateway: EmbeddingGateway, ctx: RequestContext
) -> None:
    with pytest.raises(EmptyQueryError):
        await Retriever(physics_store, gateway).retrieve("   ", ctx)


class TestDeduplication:
    """Fingerprint-based merging of repeated results."""

    PREFIX = "Handbook header repeated at the top of every single page of this employee guide. " * 2

    @pytest_asyncio.fixture
    async def store(
        self, vector_store: InMemoryVectorStore, gateway: EmbeddingGateway, doc_id: uuid.UUID
    ) -> InMemoryVectorStore:
        await index_chunks(
            vector_store,
            gateway,
            [
                make_chunk(self.PREFIX + "Vacation policy.", document_id=doc_id, index=0),
                make_chunk(self.PREFIX + "Expense policy.", document_id=doc_id, index=1),
            ],
        )
        return vector_store

    @pytest.mark.asyncio
    async def test_shared_prefix_counts_as_duplicate(
        self, store: InMemoryVectorStore, gateway: EmbeddingGateway, ctx: RequestContext
    ) -> None:
        """Distinct chunks sharing their first 100 characters collapse into one."""
        result = await Retriever(store, gateway).retrieve("employee handbook", ctx)

        assert len(result.chunks) == 1

    @pytest.mark.asyncio
    async def test_hash_strategy_keeps_distinct_chunks(
        self, store: InMemoryVectorStore, gateway: EmbeddingGateway, ctx: RequestContext
    ) -> None:
        config = RetrievalConfig(dedup_strategy="hash")

        result = await Retriever(store, gateway, config=config).retrieve("employee handbook", ctx)

        assert len(result.chunks) == 2

    def test_fingerprint_ignores_surrounding_whitespace(self) -> None:
        config = RetrievalConfig()
        padded = scored("  same text \n")
        assert fingerprint(padded, config) == fingerprint(scored("same text"), config)


@pytest.mark.asyncio
async def test_mmr_fallback_when_similarity_finds_nothing(
    physics_store: InMemoryVectorStore, gateway: EmbeddingGateway, ctx: RequestContext
) -> None:
    physics_store.search = AsyncMock(return_value=[])
    retriever = Retriever(physics_store, gateway)

    result = await retriever.retrieve("vibrating string", ctx)

    assert result.modes == [SearchMode.MEMORY_MMR]
    assert result.degraded is True
    assert result.chunks


@pytest.mark.asyncio
async def test_persistent_store_supplements_thin_results(
    vector_store: InMemoryVectorStore,
    gateway: EmbeddingGateway,
    ctx: RequestContext,
    doc_id: uuid.UUID,
) -> None:
    """One memory hit is below the minimum, so the persistent tier is searched."""
    await index_chunks(vector_store, gateway, [make_chunk(WAVE_TEXT, document_id=doc_id)])
    chunk_store = persistent_store(
        SearchResult(
            matches=[scored("Stored chunk one."), scored("Stored chunk two.", score=0.6)],
            mode=SearchMode.SERVER_VECTOR,
        )
    )
    retriever = Retriever(vector_store, gateway, chunk_store=chunk_store)

    result = await retriever.retrieve("wave equation", ctx)

    assert len(result.chunks) == 3
    assert result.modes == [SearchMode.MEMORY_SIMILARITY, SearchMode.SERVER_VECTOR]
    chunk_store.vector_search.assert_awaited_once()
    kwargs = chunk_store.vector_search.await_args.kwargs
    assert kwargs["document_ids"] == [doc_id]
    assert kwargs["query_text"] == "wave equation"
    assert kwargs["limit"] == 10
    assert kwargs["min_similarity"] == 0.5


@pytest.mark.asyncio
async def test_keyword_scores_never_replace_similarity_scores(
    physics_store: InMemoryVectorStore, gateway: EmbeddingGateway, ctx: RequestContext
) -> None:
    query = "motion bread yeast dough flour oven tax"
    chunk_store = persistent_store(
        SearchResult(
            matches=[
                scored(WAVE_TEXT, score=0.5, mode=SearchMode.KEYWORD),
                scored("Oven temperatures for sourdough.", score=0.45, mode=SearchMode.KEYWORD),
            ],
            mode=SearchMode.KEYWORD,
        )
    )
    config = RetrievalConfig(minimum=5)
    retriever = Retriever(physics_store, gateway, chunk_store=chunk_store, config=config)

    result = await retriever.retrieve(query, ctx)

    best_memory_score = max(
        c.score
        for variant in result.variants
        for c in await physics_store.search(variant)
        if c.content == WAVE_TEXT
    )
    wave = next(c for c in result.chunks if c.content == WAVE_TEXT)
    assert wave.score == best_memory_score
    assert wave.mode == SearchMode.MEMORY_SIMILARITY
    assert [c.mode for c in result.chunks] == [SearchMode.MEMORY_SIMILARITY] * 3 + [
        SearchMode.KEYWORD
    ]
    vector_scores = [c.score for c in result.chunks[:3]]
    assert vector_scores == sorted(vector_scores, reverse=True)
    assert result.chunks[-1].content == "Oven temperatures for sourdough."


@pytest.mark.asyncio
async def test_zero_query_embedding_goes_to_keyword_search(
    physics_store: InMemoryVectorStore, gateway: EmbeddingGateway, ctx: RequestContext
) -> None:
    chunk_store = persistent_store(
        SearchResult(
            matches=[scored("keyword hit", score=0.5, mode=SearchMode.KEYWORD)],
            mode=SearchMode.KEYWORD,
        )
    )
    retriever = Retriever(blind(physics_store), gateway, chunk_store=chunk_store)

    result = await retriever.retrieve(UNEMBEDDABLE_QUERY, ctx)

    assert [c.content for c in result.chunks] == ["keyword hit"]
    assert result.modes == [SearchMode.KEYWORD]
    assert result.degraded is True
    assert chunk_store.vector_search.await_args.args[0] is None


@pytest.mark.asyncio
async def test_nothing_anywhere_is_an_error(
    physics_store: InMemoryVectorStore, gateway: EmbeddingGateway, ctx: RequestContext
) -> None:
    retriever = Retriever(blind(physics_store), gateway, chunk_store=persistent_store())

    with pytest.raises(NoRelevantInformationError):
        await retriever.retrieve(UNEMBEDDABLE_QUERY, ctx)


class TestPersistentOutage:
    """Behaviour when every persistent strategy fails."""

    @pytest.mark.asyncio
    async def test_memory_results_survive_outage(
        self,
        vector_store: InMemoryVectorStore,
        gateway: EmbeddingGateway,
        ctx: RequestContext,
        doc_id: uuid.UUID,
    ) -> None:
        await index_chunks(vector_store, gateway, [make_chunk(WAVE_TEXT, document_id=doc_id)])
        chunk_store = persistent_store(error=PersistentStoreUnavailableError("down"))

        result = await Retriever(vector_store, gateway, chunk_store=chunk_store).retrieve(
            "wave equation", ctx
        )

        assert [c.content for c in result.chunks] == [WAVE_TEXT]

    @pytest.mark.asyncio
    async def test_outage_with_no_memory_results_propagates(
        self, physics_store: InMemoryVectorStore, gateway: EmbeddingGateway, ctx: RequestContext
    ) -> None:
        chunk_store = persistent_store(error=PersistentStoreUnavailableError("down"))

        with pytest.raises(PersistentStoreUnavailableError):
            await Retriever(blind(physics_store), gateway, chunk_store=chunk_store).retrieve(
                UNEMBEDDABLE_QUERY, ctx
            )
