"""Persistent store of chunk records and their embeddings.

Classes:
    StoredChunk: In-memory view of a chunk row with its decoded vector.
    VectorStore: Async CRUD over the `chunks` table that enforces a single corpus dimensionality.

Functions:
    encode_vector(vector): Serialise an embedding to a little-endian float32 blob.
    decode_vector(blob, dim): Inverse of `encode_vector`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

import numpy as np
from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from semantic_atlas.core.errors import DimensionMismatch, NotFound
from semantic_atlas.models import CORPUS_STATE_ID, Chunk, CorpusState
from semantic_atlas.utils.text import text_hash as compute_text_hash

_VECTOR_DTYPE = np.dtype("<f4")


@dataclass(slots=True)
class StoredChunk:
    source: str
    chunk_index: int
    text: str
    vector: np.ndarray
    id: Optional[int] = None
    text_hash: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self) -> None:
        self.vector = np.asarray(self.vector, dtype=np.float32).reshape(-1)
        if not self.text_hash:
            self.text_hash = compute_text_hash(self.text)

    @property
    def dim(self) -> int:
        return int(self.vector.shape[0])


def encode_vector(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype=_VECTOR_DTYPE).tobytes()


def decode_vector(blob: bytes, dim: int) -> np.ndarray:
    arr = np.frombuffer(blob, dtype=_VECTOR_DTYPE)
    if arr.size != dim:
        raise ValueError(f"Stored vector holds {arr.size} values, expected {dim}")
    return arr.astype(np.float32)


def _to_stored(record: Chunk) -> StoredChunk:
    return StoredChunk(
        id=record.id,
        source=record.source,
        chunk_index=record.chunk_index,
        text=record.text,
        vector=decode_vector(record.vector, record.dim),
        text_hash=record.text_hash,
        created_at=record.created_at,
    )


class VectorStore:
    """Chunk persistence keyed by monotonically increasing integer ids.

    The first stored vector fixes the corpus dimensionality; it is kept on the
    corpus state row and only forgotten by `clear()`.
    """

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory
        self._dim: int | None = None

    @property
    def dimension(self) -> int | None:
        return self._dim

    async def load_dimension(self) -> int | None:
        async with self._session_factory() as session:
            state = await session.get(CorpusState, CORPUS_STATE_ID)
            self._dim = state.dim if state is not None else None
        return self._dim

    def check_dimension(self, vector: np.ndarray) -> None:
        size = int(np.asarray(vector).reshape(-1).shape[0])
        if self._dim is not None and size != self._dim:
            raise DimensionMismatch(self._dim, size)

    async def put(self, chunk: StoredChunk) -> int:
        self.check_dimension(chunk.vector)
        async with self._session_factory() as session:
            if chunk.id is None:
                record = Chunk(
                    source=chunk.source,
                    chunk_index=chunk.chunk_index,
                    text=chunk.text,
                    text_hash=chunk.text_hash,
                    dim=chunk.dim,
                    vector=encode_vector(chunk.vector),
                    created_at=chunk.created_at,
                )
            else:
                record = await session.get(Chunk, chunk.id)
                if record is None:
                    raise NotFound(chunk.id)
                record.source = chunk.source
                record.chunk_index = chunk.chunk_index
                record.text = chunk.text
                record.text_hash = chunk.text_hash
                record.dim = chunk.dim
                record.vector = encode_vector(chunk.vector)
            session.add(record)

            if self._dim is None:
                state = await session.get(CorpusState, CORPUS_STATE_ID)
                if state is None:
                    state = CorpusState(id=CORPUS_STATE_ID)
                state.dim = chunk.dim
                session.add(state)

            await session.commit()
            await session.refresh(record)

        self._dim = chunk.dim
        chunk.id = record.id
        return int(record.id)

    async def get(self, chunk_id: int) -> StoredChunk:
        async with self._session_factory() as session:
            record = await session.get(Chunk, chunk_id)
            if record is None:
                raise NotFound(chunk_id)
            return _to_stored(record)

    async def get_many(self, chunk_ids: Iterable[int]) -> dict[int, StoredChunk]:
        ids = list(chunk_ids)
        if not ids:
            return {}
        async with self._session_factory() as session:
            result = await session.exec(select(Chunk).where(Chunk.id.in_(ids)))
            return {record.id: _to_stored(record) for record in result.all()}

    async def find(self, source: str, chunk_index: int) -> StoredChunk | None:
        async with self._session_factory() as session:
            result = await session.exec(
                select(Chunk).where(Chunk.source == source, Chunk.chunk_index == chunk_index)
            )
            record = result.first()
            return _to_stored(record) if record is not None else None

    async def find_id(self, source: str, chunk_index: int) -> int | None:
        found = await self.find(source, chunk_index)
        return found.id if found is not None else None

    async def list_all(self) -> list[StoredChunk]:
        async with self._session_factory() as session:
            result = await session.exec(select(Chunk).order_by(Chunk.id))
            return [_to_stored(record) for record in result.all()]

    async def count(self) -> int:
        async with self._session_factory() as session:
            result = await session.exec(select(func.count()).select_from(Chunk))
            return int(result.one())

    async def remove(self, chunk_id: int) -> None:
        async with self._session_factory() as session:
            record = await session.get(Chunk, chunk_id)
            if record is None:
                raise NotFound(chunk_id)
            await session.delete(record)
            await session.commit()

    async def clear(self) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(Chunk))
            state = await session.get(CorpusState, CORPUS_STATE_ID)
            if state is not None:
                state.dim = None
                session.add(state)
            await session.commit()
        self._dim = None
