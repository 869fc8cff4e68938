"""Corpus endpoints for ingestion, search and layout retrieval.

Endpoints:
    ingest_text(payload, corpus): Chunk, embed and place one document.
    ingest_documents(payload, corpus): Batch form of `ingest_text`.
    search(query, k, dims, method, corpus): Ranked chunks with plot coordinates.
    settle(corpus): Run a global layout settle and report on it.
    reset(corpus): Clear every chunk, edge and layout row.
    status(corpus), layout(corpus): Corpus bookkeeping and the full scatter plot.
    get_chunk(chunk_id, corpus), delete_chunk(chunk_id, corpus): Single chunk access.
    export_layout(format, corpus): Layout table as CSV, JSON or JSON lines.

Helpers:
    get_corpus(request): Dependency returning the process-wide corpus.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from semantic_atlas.core.errors import DimensionMismatch, EmbeddingUnavailable, NotFound
from semantic_atlas.schemas import (
    ChunkResource,
    CorpusStatus,
    ExportFormat,
    IngestBatchResponse,
    IngestRequest,
    IngestResponse,
    IngestTextRequest,
    LayoutResponse,
    ResetResponse,
    SearchMethod,
    SearchResponse,
    SettleResponse,
)
from semantic_atlas.services.corpus import Corpus

router = APIRouter(prefix="/api", tags=["corpus"])


def get_corpus(request: Request) -> Corpus:
    return request.app.state.corpus


@router.post("/ingest_text", response_model=IngestResponse)
async def ingest_text(payload: IngestTextRequest, corpus: Corpus = Depends(get_corpus)) -> IngestResponse:
    try:
        return await corpus.ingest(
            payload.filename,
            payload.content,
            strategy=payload.strategy,
            tokens_per_chunk=payload.tokens_per_chunk,
            overlap=payload.overlap,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/ingest", response_model=IngestBatchResponse)
async def ingest_documents(payload: IngestRequest, corpus: Corpus = Depends(get_corpus)) -> IngestBatchResponse:
    reports: list[IngestResponse] = []
    try:
        for document in payload.documents:
            reports.append(
                await corpus.ingest(
                    document.source,
                    document.content,
                    strategy=payload.strategy,
                    tokens_per_chunk=payload.tokens_per_chunk,
                    overlap=payload.overlap,
                )
            )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return IngestBatchResponse(documents=reports, total_rows=len(corpus))


@router.get("/search", response_model=SearchResponse)
async def search(
    query: str = Query(min_length=1),
    k: Optional[int] = Query(default=None, ge=1, le=1000),
    dims: Optional[int] = Query(default=None, ge=2, le=3),
    method: SearchMethod = Query(default=SearchMethod.LAYOUT),
    corpus: Corpus = Depends(get_corpus),
) -> SearchResponse:
    try:
        return await corpus.search(query, k=k, dims=dims, method=method)
    except EmbeddingUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except (DimensionMismatch, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/settle", response_model=SettleResponse)
async def settle(corpus: Corpus = Depends(get_corpus)) -> SettleResponse:
    return await corpus.global_settle()


@router.post("/reset", response_model=ResetResponse)
async def reset(corpus: Corpus = Depends(get_corpus)) -> ResetResponse:
    return await corpus.reset()


@router.get("/status", response_model=CorpusStatus)
async def corpus_status(corpus: Corpus = Depends(get_corpus)) -> CorpusStatus:
    return await corpus.status()


@router.get("/layout", response_model=LayoutResponse)
async def layout(corpus: Corpus = Depends(get_corpus)) -> LayoutResponse:
    return corpus.layout_points()


@router.get("/chunks/{chunk_id}", response_model=ChunkResource)
async def get_chunk(chunk_id: int, corpus: Corpus = Depends(get_corpus)) -> ChunkResource:
    try:
        return await corpus.chunk(chunk_id)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.delete("/chunks/{chunk_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_chunk(chunk_id: int, corpus: Corpus = Depends(get_corpus)) -> Response:
    try:
        await corpus.remove(chunk_id)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/export")
async def export_layout(
    export_format: ExportFormat = Query(default=ExportFormat.CSV, alias="format"),
    corpus: Corpus = Depends(get_corpus),
) -> Response:
    frame = corpus.export_frame()
    if export_format is ExportFormat.CSV:
        content, media_type = frame.to_csv(index=False), "text/csv"
    elif export_format is ExportFormat.JSONL:
        content, media_type = frame.to_json(orient="records", lines=True), "application/x-ndjson"
    else:
        content, media_type = frame.to_json(orient="records"), "application/json"
    filename = f"semantic_atlas_layout.{export_format.value}"
    return Response(
        content=content.encode("utf-8"),
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
