import asyncio
import hashlib
from collections.abc import AsyncGenerator
from datetime import date
from typing import Iterable, Optional

import numpy as np
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from timeline_engine.api.deps import get_embedding_provider, get_job_runner, get_narrator
from timeline_engine.core.config import RetrievalConfig
from timeline_engine.core.errors import ProviderError
from timeline_engine.db.session import get_session
from timeline_engine.main import app
from timeline_engine.services import (
    EmbeddingJobRunner,
    EmbeddingProvider,
    ProviderLocks,
    RetrievalService,
    SQLEventStore,
)


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic provider: identical text gives identical vectors, listed markers fail."""

    name = "fake"

    def __init__(
        self, dimension: int = 8, fail_markers: Iterable[str] = (), model_name: str = "fake-embed-v1"
    ) -> None:
        self.dimension = dimension
        self.model_name = model_name
        self.fail_markers = set(fail_markers)
        self.calls: list[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.called = asyncio.Event()

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        self.called.set()
        if self.gate is not None:
            await self.gate.wait()
        if any(marker in text for marker in self.fail_markers):
            raise ProviderError(f"upstream failure for '{text[:20]}'")
        digest = b""
        while len(digest) < self.dimension * 4:
            digest += hashlib.sha256(f"{len(digest)}:{text}".encode("utf-8")).digest()
        values = np.frombuffer(digest[: self.dimension * 4], dtype=np.uint32).astype(np.float64)
        return (values / np.linalg.norm(values)).tolist()


def vector_with_similarity(similarity: float, dimension: int = 8, axis: int = 1) -> list[float]:
    """Unit vector whose cosine similarity with the first basis vector equals ``similarity``."""

    vector = np.zeros(dimension)
    vector[0] = similarity
    vector[axis] = np.sqrt(max(0.0, 1.0 - similarity**2))
    return vector.tolist()


def basis(dimension: int = 8, axis: int = 0) -> list[float]:
    vector = np.zeros(dimension)
    vector[axis] = 1.0
    return vector.tolist()


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest_asyncio.fixture()
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    db_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'timeline.db'}",
        connect_args={"check_same_thread": False},
    )
    async with db_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    try:
        yield db_engine
    finally:
        await db_engine.dispose()


@pytest_asyncio.fixture()
async def session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    async_session = AsyncSession(engine, expire_on_commit=False)
    try:
        yield async_session
    finally:
        await async_session.close()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture()
def locks() -> ProviderLocks:
    return ProviderLocks()


@pytest.fixture()
def config() -> RetrievalConfig:
    return RetrievalConfig()


@pytest.fixture()
def event_store(session: AsyncSession) -> SQLEventStore:
    return SQLEventStore(session)


@pytest.fixture()
def service(session, provider, locks, config) -> RetrievalService:
    return RetrievalService(session, provider, config=config, locks=locks)


@pytest.fixture()
def make_event(event_store: SQLEventStore):
    async def _make(title: str, day: date, category: str = "other", **kwargs):
        return await event_store.add_event(title=title, start_date=day, category=category, **kwargs)

    return _make


@pytest.fixture()
def job_runner(session_factory, provider) -> EmbeddingJobRunner:
    return EmbeddingJobRunner(
        session_factory,
        lambda job_session: RetrievalService(job_session, provider).embedding_service,
        provider.name,
    )


@pytest_asyncio.fixture()
async def client(session, provider, job_runner) -> AsyncGenerator[AsyncClient, None]:
    async def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_embedding_provider] = lambda: provider
    app.dependency_overrides[get_narrator] = lambda: None
    app.dependency_overrides[get_job_runner] = lambda: job_runner
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()
