"""Unit tests for the in-memory vector store."""

import asyncio
import uuid

import pytest

from backend.pdfrag.embeddings.gateway import EmbeddingGateway
from backend.pdfrag.models.retrieval import SearchMode
from backend.pdfrag.vectorstore.memory import InMemoryVectorStore
from tests.helpers import TEST_DIMENSION, index_chunks, make_chunk


def vec(*values: float) -> list[float]:
    """Vector of the test dimension with the given leading components."""
    return list(values) + [0.0] * (TEST_DIMENSION - len(values))


@pytest.mark.asyncio
async def test_search_ranks_matching_chunk_first(
    vector_store: InMemoryVectorStore, gateway: EmbeddingGateway
) -> None:
    doc_id = uuid.uuid4()
    chunks = [
        make_chunk("bread baking needs flour and yeast", document_id=doc_id, index=0),
        make_chunk("the wave equation describes vibrating strings", document_id=doc_id, index=1),
        make_chunk("stock prices fell sharply on monday", document_id=doc_id, index=2),
    ]
    await index_chunks(vector_store, gateway, chunks)

    results = await vector_store.search("wave equation vibrating strings", k=2)

    assert len(results) == 2
    assert results[0].chunk_index == 1
    assert results[0].mode == SearchMode.MEMORY_SIMILARITY
    assert results[0].score > results[1].score


@pytest.mark.asyncio
async def test_upsert_replaces_same_document_and_index(vector_store: InMemoryVectorStore) -> None:
    doc_id = uuid.uuid4()
    await vector_store.upsert([make_chunk("old text", document_id=doc_id)], [vec(1.0)])
    await vector_store.upsert([make_chunk("new text", document_id=doc_id)], [vec(0.0, 1.0)])

    results = await vector_store.search(vec(0.0, 1.0), k=5)

    assert len(vector_store) == 1
    assert [r.content for r in results] == ["new text"]
    assert results[0].score == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_remove_and_clear(vector_store: InMemoryVectorStore) -> None:
    keep, drop = uuid.uuid4(), uuid.uuid4()
    await vector_store.upsert(
        [
            make_chunk("a", document_id=keep, index=0, title="keep.pdf"),
            make_chunk("b", document_id=drop, index=0, title="drop.pdf"),
            make_chunk("c", document_id=drop, index=1, title="drop.pdf"),
        ],
        [vec(1.0), vec(0.0, 1.0), vec(0.0, 0.0, 1.0)],
    )

    removed = await vector_store.remove(drop)

    assert removed == 2
    assert vector_store.document_ids == {keep}
    assert vector_store.document_titles == {"keep.pdf"}
    assert await vector_store.remove(drop) == 0

    await vector_store.clear()
    assert vector_store.is_empty
    assert await vector_store.search(vec(1.0)) == []


@pytest.mark.asyncio
async def test_vector_count_must_match_chunks(vector_store: InMemoryVectorStore) -> None:
    with pytest.raises(ValueError):
        await vector_store.upsert([make_chunk("a"), make_chunk("b")], [vec(1.0)])


@pytest.mark.asyncio
async def test_zero_query_vector_matches_nothing(vector_store: InMemoryVectorStore) -> None:
    await vector_store.upsert([make_chunk("a")], [vec(1.0)])

    assert vector_store.search_by_vector(vec()) == []
    assert await vector_store.search(vec()) == []


@pytest.mark.asyncio
async def test_equal_scores_keep_insertion_order(vector_store: InMemoryVectorStore) -> None:
    doc_id = uuid.uuid4()
    chunks = [make_chunk(f"copy {i}", document_id=doc_id, index=i) for i in range(4)]
    await vector_store.upsert(chunks, [vec(1.0)] * 4)

    results = await vector_store.search(vec(1.0), k=3)

    assert [r.chunk_index for r in results] == [0, 1, 2]


@pytest.mark.asyncio
async def test_mmr_prefers_diverse_results(vector_store: InMemoryVectorStore) -> None:
    """A near-duplicate loses to a less similar but novel chunk."""
    doc_id = uuid.uuid4()
    chunks = [
        make_chunk("original", document_id=doc_id, index=0),
        make_chunk("near duplicate", document_id=doc_id, index=1),
        make_chunk("different angle", document_id=doc_id, index=2),
    ]
    await vector_store.upsert(chunks, [vec(1.0), vec(0.995, 0.0998), vec(0.0, 0.0, 1.0)])
    query = vec(1.0, 0.0, 0.5)

    plain = await vector_store.search(query, k=2)
    diverse = await vector_store.max_marginal_relevance_search(query, k=2, fetch_k=3)

    assert [r.content for r in plain] == ["original", "near duplicate"]
    assert [r.content for r in diverse] == ["original", "different angle"]
    assert all(r.mode == SearchMode.MEMORY_MMR for r in diverse)


@pytest.mark.asyncio
async def test_concurrent_upserts_are_all_applied(vector_store: InMemoryVectorStore) -> None:
    """Writers are serialised, so no upsert is lost."""
    doc_ids = [uuid.uuid4() for _ in range(10)]

    await asyncio.gather(
        *(
            vector_store.upsert([make_chunk(f"doc {i}", document_id=d)], [vec(float(i + 1))])
            for i, d in enumerate(doc_ids)
        )
    )

    assert len(vector_store) == 10
    assert vector_store.document_ids == set(doc_ids)
