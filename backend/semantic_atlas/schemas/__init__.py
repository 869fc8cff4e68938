"""Convenience exports for API schemas.

Re-exports the pydantic models used across the backend so consumers can import from one module.
"""

from .corpus import (
    ChunkFailure,
    ChunkResource,
    CorpusStatus,
    DocumentInput,
    ExportFormat,
    IngestBatchResponse,
    IngestRequest,
    IngestResponse,
    IngestTextRequest,
    LayoutPointSchema,
    LayoutResponse,
    NeighborSchema,
    ResetResponse,
    SearchMethod,
    SearchPoint,
    SearchResponse,
    SettleResponse,
)

__all__ = [
    "ChunkFailure",
    "ChunkResource",
    "CorpusStatus",
    "DocumentInput",
    "ExportFormat",
    "IngestBatchResponse",
    "IngestRequest",
    "IngestResponse",
    "IngestTextRequest",
    "LayoutPointSchema",
    "LayoutResponse",
    "NeighborSchema",
    "ResetResponse",
    "SearchMethod",
    "SearchPoint",
    "SearchResponse",
    "SettleResponse",
]
