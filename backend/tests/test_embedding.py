from types import SimpleNamespace

import numpy as np
import pytest
from pydantic import SecretStr

from semantic_atlas.core.errors import EmbeddingUnavailable
from semantic_atlas.services.embedding import HashingEmbedder, OpenAIEmbedder, build_embedder, fnv1a_64

from conftest import make_settings


def test_fnv1a_matches_reference_values():
    assert fnv1a_64("") == 0xCBF29CE484222325
    assert fnv1a_64("a") == 0xAF63DC4C8601EC8C


@pytest.mark.asyncio
async def test_hashing_embedder_is_deterministic_and_normalised():
    embedder = HashingEmbedder(64)
    first = await embedder.embed("The whale breached beside the ship")
    second = await embedder.embed("The whale breached beside the ship")
    assert first.shape == (64,)
    assert first.dtype == np.float32
    assert np.array_equal(first, second)
    assert np.linalg.norm(first) == pytest.approx(1.0, abs=1e-6)


@pytest.mark.asyncio
async def test_hashing_embedder_returns_zeros_without_tokens():
    vector = await HashingEmbedder(16).embed("a ! ?")
    assert not np.any(vector)


def test_build_embedder_defaults_to_hashing():
    embedder = build_embedder(make_settings(embedding_dim=32))
    assert isinstance(embedder, HashingEmbedder)
    assert embedder.dimension == 32


@pytest.mark.asyncio
async def test_openai_embedder_without_key_is_unavailable():
    embedder = OpenAIEmbedder(make_settings(embedding_provider="openai", openai_api_key=None))
    assert not embedder.is_configured
    with pytest.raises(EmbeddingUnavailable):
        await embedder.embed("hello")


class _FakeEmbeddings:
    def __init__(self, vector=None, error: Exception | None = None) -> None:
        self.vector = vector
        self.error = error
        self.payloads: list[dict] = []

    async def create(self, **payload):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(data=[SimpleNamespace(embedding=self.vector)], model=payload["model"])


@pytest.mark.asyncio
async def test_openai_embedder_normalises_response_vector():
    embeddings = _FakeEmbeddings(vector=[3.0, 4.0, 0.0])
    client = SimpleNamespace(embeddings=embeddings)
    settings = make_settings(embedding_provider="openai", openai_api_key=SecretStr("sk-test"))
    embedder = OpenAIEmbedder(settings, client=client)

    vector = await embedder.embed("hello")

    assert vector.tolist() == pytest.approx([0.6, 0.8, 0.0])
    assert embeddings.payloads[0]["dimensions"] == 3
    assert embeddings.payloads[0]["input"] == ["hello"]


@pytest.mark.asyncio
async def test_openai_embedder_exhausted_retries_raise_unavailable():
    embeddings = _FakeEmbeddings(error=RuntimeError("boom"))
    client = SimpleNamespace(embeddings=embeddings)
    settings = make_settings(
        embedding_provider="openai",
        embedding_retry_attempts=1,
        openai_embedding_fallback_model="",
    )
    embedder = OpenAIEmbedder(settings, client=client)

    with pytest.raises(EmbeddingUnavailable):
        await embedder.embed("hello")
    assert len(embeddings.payloads) == 1
