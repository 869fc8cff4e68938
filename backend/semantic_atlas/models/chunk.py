"""Corpus chunk ORM model.

Classes:
    Chunk: Stores one text chunk, its provenance and its embedding vector.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, LargeBinary, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Chunk(SQLModel, table=True):
    __tablename__ = "chunks"
    # AUTOINCREMENT keeps identifiers monotonic; ids of removed chunks are never reused.
    __table_args__ = (
        UniqueConstraint("source", "chunk_index", name="uq_chunk_source_index"),
        {"sqlite_autoincrement": True},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    source: str = Field(index=True)
    chunk_index: int = Field(default=0)
    text: str = Field(sa_column=Column(Text, nullable=False))
    text_hash: str = Field(index=True)
    dim: int
    vector: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    created_at: datetime = Field(default_factory=datetime.utcnow)
