"""Shared pytest fixtures for all test suites."""

import os
import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from backend.pdfrag.db.context import RequestContext
from backend.pdfrag.db.inmemory import (
    InMemoryChunkStore,
    InMemoryDocumentStore,
    InMemorySessionStore,
    InMemoryStorage,
)
from backend.pdfrag.db.models import Base
from backend.pdfrag.embeddings.gateway import BatchPolicy, EmbeddingGateway
from backend.pdfrag.embeddings.provider import DeterministicEmbeddingProvider
from backend.pdfrag.utils.retry import RetryPolicy
from backend.pdfrag.vectorstore.memory import InMemoryVectorStore
from tests.helpers import TEST_DIMENSION, SleepRecorder


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(user_id=uuid.UUID("00000000-0000-0000-0000-000000000002"))


@pytest.fixture
def other_ctx() -> RequestContext:
    return RequestContext(user_id=uuid.UUID("00000000-0000-0000-0000-000000000003"))


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def gateway(sleep_recorder: SleepRecorder) -> EmbeddingGateway:
    """Gateway over the deterministic provider with no real waiting."""
    return EmbeddingGateway(
        DeterministicEmbeddingProvider(dimension=TEST_DIMENSION),
        dimension=TEST_DIMENSION,
        retry=RetryPolicy(sleep_fn=sleep_recorder),
        batch_policy=BatchPolicy(),
        sleep_fn=sleep_recorder,
    )


@pytest.fixture
def vector_store(gateway: EmbeddingGateway) -> InMemoryVectorStore:
    return InMemoryVectorStore(gateway)


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def document_store(storage: InMemoryStorage) -> InMemoryDocumentStore:
    return InMemoryDocumentStore(storage)


@pytest.fixture
def chunk_store(storage: InMemoryStorage) -> InMemoryChunkStore:
    return InMemoryChunkStore(storage, dimension=TEST_DIMENSION)


@pytest.fixture
def session_store(storage: InMemoryStorage) -> InMemorySessionStore:
    return InMemorySessionStore(storage)


@pytest_asyncio.fixture
async def sqlite_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with the full schema.

    StaticPool keeps one connection so every session sees the same database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(sqlite_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSession(sqlite_engine, expire_on_commit=False) as session:
        yield session


@pytest_asyncio.fixture
async def postgres_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create async engine for PostgreSQL integration tests.

    Requires DATABASE_URL to point at PostgreSQL with the vector extension
    available. Tests using this fixture should be marked with @pytest.mark.postgres.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set - skipping postgres test")

    if not database_url.startswith(("postgresql://", "postgresql+asyncpg://")):
        pytest.skip(f"DATABASE_URL is not PostgreSQL: {database_url}")

    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    engine = create_async_engine(database_url, poolclass=NullPool, echo=False)

    async with engine.begin() as conn:
        await conn.exec_driver_sql("CREATE EXTENSION IF NOT EXISTS vector")
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def postgres_session(postgres_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSession(postgres_engine, expire_on_commit=False) as session:
        yield session
        await session.rollback()
