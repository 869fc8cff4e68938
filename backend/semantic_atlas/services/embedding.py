"""Embedding collaborators.

Classes:
    BaseEmbedder: Interface every embedding backend implements.
    HashingEmbedder: Deterministic signed feature-hashing embedder, needs no network.
    OpenAIEmbedder: Embeds through the OpenAI embeddings API with retry semantics.

Functions:
    build_embedder(settings): Construct the embedder selected by configuration.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import numpy as np
from openai import AsyncOpenAI
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_exponential

from semantic_atlas.core.config import Settings
from semantic_atlas.core.errors import EmbeddingUnavailable
from semantic_atlas.services.chunking import tokenize

_LOGGER = logging.getLogger(__name__)

_FNV_OFFSET = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3
_MASK_64 = 0xFFFFFFFFFFFFFFFF


class BaseEmbedder(ABC):
    """Turns a text into one embedding vector.

    Implementations must be deterministic for identical input and report a
    stable name and dimensionality.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def dimension(self) -> int:
        ...

    @abstractmethod
    async def embed(self, text: str) -> np.ndarray:
        ...

    @staticmethod
    def normalize(vector: np.ndarray) -> np.ndarray:
        norm = float(np.linalg.norm(vector))
        if norm == 0.0:
            return vector
        return vector / norm


def fnv1a_64(token: str) -> int:
    value = _FNV_OFFSET
    for byte in token.encode("utf-8"):
        value ^= byte
        value = (value * _FNV_PRIME) & _MASK_64
    return value


class HashingEmbedder(BaseEmbedder):
    def __init__(self, dim: int = 512) -> None:
        if dim < 1:
            raise ValueError("Hashing embedder dimension must be positive")
        self._dim = dim

    @property
    def name(self) -> str:
        return f"hashing-fnv1a-{self._dim}"

    @property
    def dimension(self) -> int:
        return self._dim

    def embed_sync(self, text: str) -> np.ndarray:
        vector = np.zeros(self._dim, dtype=np.float32)
        for token in tokenize(text):
            digest = fnv1a_64(token)
            sign = 1.0 if digest & 1 == 0 else -1.0
            vector[digest % self._dim] += sign
        return self.normalize(vector).astype(np.float32)

    async def embed(self, text: str) -> np.ndarray:
        return self.embed_sync(text)


class OpenAIEmbedder(BaseEmbedder):
    def __init__(
        self,
        settings: Settings,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        api_key = settings.openai_api_key.get_secret_value() if settings.openai_api_key else None
        if client is not None:
            self._client = client
        elif api_key:
            self._client = AsyncOpenAI(api_key=api_key)
        else:
            self._client = None
        self._settings = settings
        self._model = settings.openai_embedding_model
        self._dim = settings.embedding_dim

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    @property
    def name(self) -> str:
        return f"openai-{self._model}-{self._dim}"

    @property
    def dimension(self) -> int:
        return self._dim

    async def embed(self, text: str) -> np.ndarray:
        if self._client is None:
            raise EmbeddingUnavailable("OpenAI client not configured. Set OPENAI_API_KEY.")

        payload: dict[str, Any] = dict(model=self._model, input=[text], dimensions=self._dim)
        try:
            response = await self._request(payload)
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            raise EmbeddingUnavailable(f"Embedding request failed: {cause}") from cause

        vector = np.asarray(response.data[0].embedding, dtype=np.float32)
        return self.normalize(vector).astype(np.float32)

    async def _request(self, payload: dict[str, Any]):
        retrying = AsyncRetrying(
            wait=wait_exponential(multiplier=1, min=1, max=20),
            stop=stop_after_attempt(self._settings.embedding_retry_attempts),
        )
        async for attempt in retrying:
            with attempt:
                try:
                    return await self._client.embeddings.create(**payload)
                except Exception:
                    fallback = self._settings.openai_embedding_fallback_model
                    if not fallback or payload["model"] == fallback:
                        raise
                    _LOGGER.warning("Embedding model %s failed, retrying with %s", payload["model"], fallback)
                    return await self._client.embeddings.create(**{**payload, "model": fallback})


def build_embedder(settings: Settings) -> BaseEmbedder:
    if settings.embedding_provider == "openai":
        return OpenAIEmbedder(settings)
    return HashingEmbedder(settings.embedding_dim)
