"""Pydantic schemas for corpus ingestion, search and layout payloads.

Classes:
    IngestTextRequest, DocumentInput, IngestRequest: Ingestion request bodies.
    ChunkFailure, IngestResponse, IngestBatchResponse: Ingestion reports.
    SearchPoint, SearchResponse: Ranked hits with plot coordinates.
    LayoutPointSchema, LayoutResponse: Full scatter plot payload.
    CorpusStatus, SettleResponse, ResetResponse: Corpus bookkeeping responses.
    NeighborSchema, ChunkResource: Single chunk detail.
    ExportFormat, SearchMethod: Query enums.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationInfo, field_validator


class ExportFormat(str, Enum):
    JSON = "json"
    JSONL = "jsonl"
    CSV = "csv"


class SearchMethod(str, Enum):
    LAYOUT = "layout"
    PCA = "pca"


ChunkStrategy = Literal["tokens", "auto", "paragraphs", "sentences"]


class _ChunkingOptions(BaseModel):
    tokens_per_chunk: Optional[int] = Field(default=None, ge=1, le=100_000)
    overlap: Optional[int] = Field(default=None, ge=0)
    strategy: Optional[ChunkStrategy] = None

    @field_validator("overlap")
    @classmethod
    def clamp_overlap(
        cls,
        value: Optional[int],
        info: ValidationInfo,
    ) -> Optional[int]:
        if value is None:
            return None
        tokens_per_chunk = info.data.get("tokens_per_chunk")
        if tokens_per_chunk is not None:
            return min(value, max(tokens_per_chunk - 1, 0))
        return value


class IngestTextRequest(_ChunkingOptions):
    filename: str = Field(min_length=1, max_length=512)
    content: str

    @field_validator("filename")
    @classmethod
    def trim_filename(cls, value: str) -> str:
        return value.strip()


class DocumentInput(BaseModel):
    source: str = Field(min_length=1, max_length=512)
    content: str


class IngestRequest(_ChunkingOptions):
    documents: list[DocumentInput] = Field(min_length=1)


class ChunkFailure(BaseModel):
    source: str
    chunk_index: int
    error: str
    detail: str


class IngestResponse(BaseModel):
    filename: str
    chunks: int
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    failures: list[ChunkFailure] = Field(default_factory=list)
    total_rows: int
    elapsed_ms: float = 0.0


class SearchPoint(BaseModel):
    id: int
    source: str
    chunk_index: int
    score: float
    text_preview: str
    x: Optional[float] = None
    y: Optional[float] = None
    z: Optional[float] = None
    state: Optional[str] = None


class SearchResponse(BaseModel):
    query: str
    method: SearchMethod
    dims: int
    points: list[SearchPoint]


class LayoutPointSchema(BaseModel):
    id: int
    source: str
    chunk_index: int
    text_preview: str
    x: float
    y: float
    z: Optional[float] = None
    state: str


class LayoutResponse(BaseModel):
    n_components: int
    points: list[LayoutPointSchema]


class CorpusStatus(BaseModel):
    total_chunks: int
    dimension: Optional[int] = None
    metric: str
    n_components: int
    index_method: str
    states: dict[str, int]
    inserts_since_settle: int
    settle_count: int
    last_settled_at: Optional[datetime] = None
    trustworthiness: Optional[float] = None
    settling: bool = False


class SettleResponse(BaseModel):
    applied: bool
    points: int
    epochs: int
    corrupted: list[int] = Field(default_factory=list)
    graph_rebuilt: bool = False
    trustworthiness: Optional[float] = None
    elapsed_ms: float = 0.0


class ResetResponse(BaseModel):
    removed_chunks: int


class NeighborSchema(BaseModel):
    id: int
    distance: float
    weight: float


class ChunkResource(BaseModel):
    id: int
    source: str
    chunk_index: int
    text: str
    text_hash: str
    dim: int
    created_at: datetime
    state: Optional[str] = None
    coordinates: Optional[list[float]] = None
    neighbors: list[NeighborSchema] = Field(default_factory=list)


class IngestBatchResponse(BaseModel):
    documents: list[IngestResponse]
    total_rows: int
