"""Test helpers shared across suites."""

import uuid
from collections.abc import Sequence

import fitz  # PyMuPDF

from backend.pdfrag.embeddings.gateway import EmbeddingGateway
from backend.pdfrag.models.docs import Chunk
from backend.pdfrag.utils.metrics import RagMetrics
from backend.pdfrag.vectorstore.memory import InMemoryVectorStore

TEST_DIMENSION = 256


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_chunk(
    content: str,
    *,
    document_id: uuid.UUID | None = None,
    title: str = "notes.pdf",
    index: int = 0,
    page: int | None = 1,
) -> Chunk:
    return Chunk(
        document_id=document_id or uuid.uuid4(),
        document_title=title,
        chunk_index=index,
        content=content,
        page=page,
    )


async def index_chunks(
    store: InMemoryVectorStore, gateway: EmbeddingGateway, chunks: Sequence[Chunk]
) -> None:
    """Embed chunks with the gateway and add them to the store."""
    vectors = await gateway.embed_batch([c.content for c in chunks])
    await store.upsert(chunks, vectors)


class RecordingMetrics(RagMetrics):
    """Metrics sink that remembers every call."""

    def __init__(self) -> None:
        self.retries: list[tuple[str, str]] = []
        self.fallbacks = 0
        self.adjustments: list[str] = []
        self.strategies: list[str] = []
        self.ingested = 0
        self.queries: list[tuple[str, str]] = []

    def inc_retry(self, operation: str, reason: str) -> None:
        self.retries.append((operation, reason))

    def inc_embedding_fallback(self, count: int = 1) -> None:
        self.fallbacks += count

    def inc_dimension_adjustment(self, kind: str) -> None:
        self.adjustments.append(kind)

    def inc_search_strategy(self, strategy: str) -> None:
        self.strategies.append(strategy)

    def inc_ingested_chunks(self, count: int) -> None:
        self.ingested += count

    def record_query(self, category: str, outcome: str, latency_ms: float) -> None:
        self.queries.append((category, outcome))


def pdf_bytes(pages: Sequence[str]) -> bytes:
    """Build a small PDF with one text line per page; an empty string gives a blank page."""
    with fitz.open() as doc:
        for text in pages:
            page = doc.new_page()
            if text:
                page.insert_text((72, 72), text, fontsize=11)
        return doc.tobytes()
