# conftest.py
from collections.abc import Sequence
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from book_rag.config import Settings
from book_rag.core.models import Chapter
from book_rag.main import create_app
from book_rag.repositories.embedding_repository import SQLiteEmbeddingRepository
from book_rag.services.rag_session import RagSession
from book_rag.worker.channel import TaskChannelClient
from book_rag.worker.transport import LocalTransport


class FakeEmbedder:
    """Deterministic embedder: a vector derived from each text, calls recorded."""

    def __init__(self, dimension: int = 4, model_dimensions: dict[str, int] | None = None):
        self.dimension = dimension
        self.model_dimensions = model_dimensions or {}
        self.calls: list[tuple[list[str], str | None]] = []
        self.fail_with: Exception | None = None

    def vector_for(self, text: str, dimension: int | None = None) -> list[float]:
        dim = dimension or self.dimension
        seed = sum(ord(c) for c in text) or 1
        return [float((seed * (i + 1)) % 97 + 1) for i in range(dim)]

    async def embed(
        self, texts: Sequence[str], model: str | None = None, *, abort=None
    ) -> list[list[float]]:
        self.calls.append((list(texts), model))
        if self.fail_with is not None:
            raise self.fail_with
        dim = self.model_dimensions.get(model or "", self.dimension)
        return [self.vector_for(text, dim) for text in texts]

    async def embed_query(self, text: str, model: str | None = None, *, abort=None) -> list[float]:
        vectors = await self.embed([text], model, abort=abort)
        return vectors[0]

    async def aclose(self) -> None:
        return None


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        provider_base_url="http://provider.invalid/api",
        provider_retry_base_delay=0.01,
        embedding_db_path=tmp_path / "embeddings.db",
        worker_mode="local",
        embedding_batch_size=2,
        chunk_size=40,
        chunk_overlap=10,
        min_chapter_chars=10,
        channel_timeout=5.0,
        search_timeout=5.0,
    )


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def sample_chapters() -> list[Chapter]:
    return [
        Chapter(
            id="ch1",
            title="Loomings",
            body="<p>Call me Ishmael. Some years ago, never mind how long precisely.</p>",
        ),
        Chapter(
            id="ch2",
            title="The Carpet-Bag",
            body="<p>I stuffed a shirt or two into my old carpet-bag and started.</p>",
        ),
        Chapter(id="ch3", title="Blank", body="<p>Short.</p>"),
    ]


@pytest.fixture
def embedding_store(tmp_path: Path):
    store = SQLiteEmbeddingRepository(tmp_path / "cache" / "embeddings.db")
    try:
        yield store
    finally:
        store.close()


@pytest_asyncio.fixture
async def local_channel():
    """Channel client served by an in-process vector index context."""
    channel = TaskChannelClient(LocalTransport(), timeout=5.0, max_concurrent=10)
    await channel.start()
    try:
        yield channel
    finally:
        channel.terminate()


@pytest.fixture
def api_client(test_settings: Settings, fake_embedder: FakeEmbedder):
    """TestClient whose lifespan owns a session with a local index and fake embedder."""
    app = create_app(
        test_settings,
        session_factory=lambda: RagSession(
            test_settings, embedding_provider=fake_embedder, transport_factory=LocalTransport
        ),
    )
    with TestClient(app) as client:
        yield client
