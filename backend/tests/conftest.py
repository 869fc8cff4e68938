from collections.abc import AsyncGenerator

import numpy as np
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession

from semantic_atlas.api.routes.corpus import get_corpus
from semantic_atlas.core.config import Settings
from semantic_atlas.core.errors import EmbeddingUnavailable
from semantic_atlas.db.session import init_db
from semantic_atlas.main import app
from semantic_atlas.services.corpus import Corpus
from semantic_atlas.services.embedding import BaseEmbedder, HashingEmbedder


class FakeEmbedder(BaseEmbedder):
    """Returns fixed vectors for known texts and hashes anything else."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, dim: int = 3) -> None:
        self.vectors = {key: np.asarray(value, dtype=np.float32) for key, value in (vectors or {}).items()}
        self._dim = dim
        self._fallback = HashingEmbedder(dim)
        self.fail_on: set[str] = set()
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def dimension(self) -> int:
        return self._dim

    async def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if text in self.fail_on:
            raise EmbeddingUnavailable(f"refusing to embed {text!r}")
        if text in self.vectors:
            return self.vectors[text]
        return self._fallback.embed_sync(text)


def make_settings(**overrides) -> Settings:
    values = dict(
        global_settle_every=0,
        chunk_strategy="paragraphs",
        n_neighbors=2,
        local_epochs=20,
        global_epochs=40,
        worker_threads=1,
        embedding_dim=3,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest_asyncio.fixture()
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'corpus.db'}",
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def corpus(settings, session_factory, embedder) -> AsyncGenerator[Corpus, None]:
    instance = Corpus(settings, session_factory, embedder=embedder)
    await instance.load()
    try:
        yield instance
    finally:
        await instance.close()


@pytest_asyncio.fixture()
async def client(corpus: Corpus) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_corpus] = lambda: corpus
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()
