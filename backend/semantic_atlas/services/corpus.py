"""Corpus aggregate: the single writer over store, graph and layout.

Classes:
    ChunkMeta: Cached provenance and preview of a stored chunk.
    Corpus: Orchestrates ingestion, removal, global settles, search and export.
"""

from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.manifold import trustworthiness
from sqlalchemy.ext.asyncio import async_sessionmaker

from semantic_atlas.core.config import Settings
from semantic_atlas.core.errors import (
    DimensionMismatch,
    EmbeddingUnavailable,
    LayoutCorruption,
    NotFound,
)
from semantic_atlas.schemas import (
    ChunkFailure,
    ChunkResource,
    CorpusStatus,
    IngestResponse,
    LayoutPointSchema,
    LayoutResponse,
    NeighborSchema,
    ResetResponse,
    SearchMethod,
    SearchPoint,
    SearchResponse,
    SettleResponse,
)
from semantic_atlas.services.chunking import ChunkDraft, make_chunk_drafts
from semantic_atlas.services.embedding import BaseEmbedder, build_embedder
from semantic_atlas.services.layout import OptimizationResult, PointState
from semantic_atlas.services.neighbors import AdaptiveNeighborIndex, NeighborGraph, NeighborGraphBuilder
from semantic_atlas.services.projector import IncrementalProjector
from semantic_atlas.services.search import QueryService, pca_coordinates
from semantic_atlas.services.snapshot import SnapshotStore
from semantic_atlas.services.vector_store import StoredChunk, VectorStore
from semantic_atlas.utils.text import preview, text_hash

_LOGGER = logging.getLogger(__name__)

_TRUST_MIN_POINTS = 4
_TRUST_MAX_NEIGHBORS = 5


@dataclass(slots=True)
class ChunkMeta:
    source: str
    chunk_index: int
    preview: str


@dataclass(slots=True)
class _SettleOutcome:
    result: OptimizationResult
    graph: Optional[NeighborGraph]
    trustworthiness: Optional[float]


class Corpus:
    """One corpus per process.

    Every graph or layout mutation happens under `_lock`. Searches never take
    it: they read the live structures synchronously between awaits.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker,
        embedder: BaseEmbedder | None = None,
    ) -> None:
        self._settings = settings
        self._embedder = embedder or build_embedder(settings)
        self.store = VectorStore(session_factory)
        self.snapshots = SnapshotStore(session_factory)
        self.metric = settings.distance_metric
        self.n_components = settings.layout_components
        self.projector = IncrementalProjector.from_settings(self.store, settings)
        self.query = QueryService(self.projector, self._embedder)

        self._lock = asyncio.Lock()
        self._settle_guard = asyncio.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=settings.worker_threads,
            thread_name_prefix="layout-settle",
        )
        self._generation = 0
        self._mutations = 0
        self._placed_at: dict[int, int] = {}
        self._inserts_since_settle = 0
        self._inserts_since_rebuild = 0
        self._meta: dict[int, ChunkMeta] = {}
        self._settle_task: asyncio.Task | None = None
        self._settling = False

    @property
    def embedder(self) -> BaseEmbedder:
        return self._embedder

    @property
    def generation(self) -> int:
        return self._generation

    def __len__(self) -> int:
        return len(self._meta)

    def _rebuild_projector(self) -> None:
        self.projector = IncrementalProjector.from_settings(
            self.store,
            self._settings,
            metric=self.metric,
            n_components=self.n_components,
        )
        self.query.projector = self.projector

    def _remember(self, chunk: StoredChunk) -> None:
        self._meta[chunk.id] = ChunkMeta(
            source=chunk.source,
            chunk_index=chunk.chunk_index,
            preview=preview(chunk.text, self._settings.preview_chars),
        )

    # -- start-up -------------------------------------------------------

    async def load(self) -> None:
        """Restore the live graph and layout from the database.

        Chunks missing a neighbour list or a layout row finish their insertion
        here, before the corpus serves requests.
        """

        started = time.perf_counter()
        async with self._lock:
            state = await self.snapshots.load_state()
            await self.store.load_dimension()
            chunks = await self.store.list_all()

            if chunks:
                if state.metric != self.metric or state.n_components != self.n_components:
                    _LOGGER.warning(
                        "Stored corpus uses metric=%s n_components=%d; ignoring configured %s/%d",
                        state.metric,
                        state.n_components,
                        self.metric,
                        self.n_components,
                    )
                self.metric = state.metric
                self.n_components = state.n_components
            else:
                await self.snapshots.update_state(metric=self.metric, n_components=self.n_components)

            self._rebuild_projector()
            self._meta.clear()
            self._placed_at.clear()
            self._inserts_since_settle = state.inserts_since_settle
            await self.snapshots.prune([chunk.id for chunk in chunks])

            projector = self.projector
            for chunk in chunks:
                projector.index.add(chunk.id, chunk.vector)
                self._remember(chunk)

            stored_lists = await self.snapshots.load_graph()
            expected = min(projector.graph.n_neighbors, max(len(chunks) - 1, 0))
            unlinked = []
            for chunk in chunks:
                entries = stored_lists.get(chunk.id)
                if entries is None or len(entries) < expected:
                    unlinked.append(chunk.id)
                else:
                    projector.graph.restore(chunk.id, entries)
            relinked: set[int] = set()
            for chunk_id in unlinked:
                relinked |= projector.builder.link(chunk_id)

            projector.layout = await self.snapshots.load_layout(self.n_components)
            unplaced = [chunk.id for chunk in chunks if chunk.id not in projector.layout]
            moved: set[int] = set()
            if unplaced and len(unplaced) == len(chunks) and len(chunks) > 1:
                result = projector.optimizer.optimize(
                    projector.layout, projector.graph, self._settings.global_epochs
                )
                for chunk_id, coords in result.coords.items():
                    projector.layout.coords[chunk_id] = coords
                    projector.layout.mark(chunk_id, PointState.LOCALLY_PLACED)
                moved.update(result.coords)
            else:
                for chunk_id in unplaced:
                    moved |= projector.position(chunk_id).moved

            await self.snapshots.write_neighbors(
                {chunk_id: projector.graph.neighbors(chunk_id) for chunk_id in relinked}
            )
            await self.snapshots.write_layout(projector.layout, moved)

        _LOGGER.info(
            "Loaded corpus with %d chunks (%d relinked, %d placed) in %.1f ms",
            len(chunks),
            len(unlinked),
            len(unplaced),
            (time.perf_counter() - started) * 1000.0,
        )

    # -- ingestion ------------------------------------------------------

    async def ingest(
        self,
        source: str,
        content: str,
        *,
        strategy: str | None = None,
        tokens_per_chunk: int | None = None,
        overlap: int | None = None,
    ) -> IngestResponse:
        started = time.perf_counter()
        drafts = make_chunk_drafts(
            source,
            content,
            strategy=strategy or self._settings.chunk_strategy,
            tokens_per_chunk=tokens_per_chunk or self._settings.tokens_per_chunk,
            overlap=self._settings.chunk_overlap if overlap is None else overlap,
        )

        counts = {"inserted": 0, "updated": 0, "unchanged": 0}
        failures: list[ChunkFailure] = []
        for draft in drafts:
            try:
                vector = await self._embedder.embed(draft.text)
            except EmbeddingUnavailable as exc:
                failures.append(_failure(draft, exc))
                continue
            try:
                async with self._lock:
                    outcome = await self._insert_locked(draft, vector)
            except (DimensionMismatch, LayoutCorruption) as exc:
                _LOGGER.warning("Chunk %s#%d not placed: %s", draft.source, draft.chunk_index, exc)
                failures.append(_failure(draft, exc))
                continue
            counts[outcome] += 1

        self._maybe_schedule_settle()
        elapsed = (time.perf_counter() - started) * 1000.0
        _LOGGER.info(
            "Ingested %s: %d chunks (%d new, %d updated, %d unchanged, %d failed) in %.1f ms",
            source,
            len(drafts),
            counts["inserted"],
            counts["updated"],
            counts["unchanged"],
            len(failures),
            elapsed,
        )
        return IngestResponse(
            filename=source,
            chunks=len(drafts),
            inserted=counts["inserted"],
            updated=counts["updated"],
            unchanged=counts["unchanged"],
            failed=len(failures),
            failures=failures,
            total_rows=len(self._meta),
            elapsed_ms=round(elapsed, 3),
        )

    async def _insert_locked(self, draft: ChunkDraft, vector: np.ndarray) -> str:
        existing = await self.store.find(draft.source, draft.chunk_index)
        digest = text_hash(draft.text)
        if existing is not None and existing.text_hash == digest:
            return "unchanged"

        self.store.check_dimension(vector)
        projector = self.projector
        chunk = StoredChunk(
            source=draft.source,
            chunk_index=draft.chunk_index,
            text=draft.text,
            vector=vector,
            text_hash=digest,
        )
        outcome = "inserted"
        if existing is not None:
            chunk.id = existing.id
            outcome = "updated"

        placement = await projector.insert(chunk)
        relinked = placement.relinked
        await self.snapshots.write_neighbors(
            {chunk_id: projector.graph.neighbors(chunk_id) for chunk_id in relinked if chunk_id in projector.graph}
        )
        await self.snapshots.write_layout(projector.layout, placement.moved | {placement.chunk_id})

        self._remember(chunk)
        self._mutations += 1
        self._placed_at[placement.chunk_id] = self._mutations
        self._inserts_since_settle += 1
        self._inserts_since_rebuild += 1
        await self.snapshots.update_state(inserts_since_settle=self._inserts_since_settle)

        if placement.chunk_id in placement.corrupted:
            raise LayoutCorruption(placement.chunk_id)
        return outcome

    async def remove(self, chunk_id: int) -> None:
        async with self._lock:
            if chunk_id not in self._meta:
                raise NotFound(chunk_id)
            await self.store.remove(chunk_id)
            changed = self.projector.unlink(chunk_id)
            await self.snapshots.delete_chunk(chunk_id)
            await self.snapshots.write_neighbors(
                {ref: self.projector.graph.neighbors(ref) for ref in changed if ref in self.projector.graph}
            )
            self._meta.pop(chunk_id, None)
            self._placed_at.pop(chunk_id, None)
            self._mutations += 1
        _LOGGER.info("Removed chunk %d; %d neighbour lists recomputed", chunk_id, len(changed))

    async def reset(self) -> ResetResponse:
        async with self._lock:
            removed = len(self._meta)
            self._generation += 1
            await self.store.clear()
            await self.snapshots.clear()
            self.metric = self._settings.distance_metric
            self.n_components = self._settings.layout_components
            await self.snapshots.update_state(metric=self.metric, n_components=self.n_components)
            self._rebuild_projector()
            self._meta.clear()
            self._placed_at.clear()
            self._mutations += 1
            self._inserts_since_settle = 0
            self._inserts_since_rebuild = 0
        _LOGGER.info("Corpus reset; %d chunks removed", removed)
        return ResetResponse(removed_chunks=removed)

    # -- global settle --------------------------------------------------

    def _maybe_schedule_settle(self) -> None:
        every = self._settings.global_settle_every
        if every <= 0 or self._inserts_since_settle < every:
            return
        if self._settle_task is not None and not self._settle_task.done():
            return
        self._settle_task = asyncio.create_task(self.global_settle())
        self._settle_task.add_done_callback(_log_task_failure)

    async def global_settle(self) -> SettleResponse:
        async with self._settle_guard:
            return await self._global_settle()

    async def _global_settle(self) -> SettleResponse:
        started = time.perf_counter()
        async with self._lock:
            projector = self.projector
            if not len(projector.index):
                return SettleResponse(applied=False, points=0, epochs=0)
            generation = self._generation
            marker = self._mutations
            ids = sorted(int(i) for i in projector.index.matrix.ids)
            vectors = projector.index.matrix.take(ids)
            graph = projector.graph.copy()
            layout = projector.layout.copy()
            rebuild = (
                projector.index.method == "lsh"
                and self._inserts_since_rebuild > self._settings.graph_rebuild_ratio * len(ids)
            )
            self._settling = True

        try:
            loop = asyncio.get_running_loop()
            outcome = await loop.run_in_executor(
                self._executor,
                partial(self._settle_snapshot, projector, graph, layout, ids, vectors, rebuild),
            )
        finally:
            self._settling = False

        async with self._lock:
            if generation != self._generation:
                _LOGGER.info("Discarding global settle started before a reset")
                return SettleResponse(applied=False, points=0, epochs=outcome.result.epochs)

            live = self.projector
            corrupted = set(outcome.result.corrupted)
            applied: list[int] = []
            for chunk_id, coords in outcome.result.coords.items():
                if chunk_id not in live.layout or chunk_id in corrupted:
                    continue
                if self._placed_at.get(chunk_id, 0) > marker:
                    continue
                live.layout.coords[chunk_id] = coords
                live.layout.settle(chunk_id)
                applied.append(chunk_id)

            graph_rebuilt = False
            if outcome.graph is not None and self._mutations == marker:
                live.replace_graph(outcome.graph)
                self._inserts_since_rebuild = 0
                graph_rebuilt = True
                await self.snapshots.write_neighbors(
                    {chunk_id: outcome.graph.neighbors(chunk_id) for chunk_id in outcome.graph.ids()}
                )

            await self.snapshots.write_layout(live.layout, applied)
            self._inserts_since_settle = max(0, self._mutations - marker)
            await self.snapshots.record_settle(
                inserts_since_settle=self._inserts_since_settle,
                trustworthiness=outcome.trustworthiness,
            )

        elapsed = (time.perf_counter() - started) * 1000.0
        _LOGGER.info(
            "Global settle applied to %d points over %d epochs in %.1f ms (trustworthiness=%s)",
            len(applied),
            outcome.result.epochs,
            elapsed,
            outcome.trustworthiness,
        )
        return SettleResponse(
            applied=True,
            points=len(applied),
            epochs=outcome.result.epochs,
            corrupted=sorted(corrupted),
            graph_rebuilt=graph_rebuilt,
            trustworthiness=outcome.trustworthiness,
            elapsed_ms=round(elapsed, 3),
        )

    def _settle_snapshot(
        self,
        projector: IncrementalProjector,
        graph: NeighborGraph,
        layout,
        ids: Sequence[int],
        vectors: np.ndarray,
        rebuild: bool,
    ) -> _SettleOutcome:
        rebuilt: Optional[NeighborGraph] = None
        if rebuild:
            index = AdaptiveNeighborIndex(
                self.metric,
                threshold=self._settings.approximate_threshold,
                n_tables=self._settings.lsh_tables,
                n_planes=self._settings.lsh_hyperplanes,
                seed=self._settings.random_seed,
            )
            for chunk_id, vector in zip(ids, vectors):
                index.add(chunk_id, vector)
            rebuilt = NeighborGraphBuilder(index, NeighborGraph(graph.n_neighbors)).rebuild()
            graph = rebuilt

        result = projector.optimizer.optimize(layout, graph, self._settings.global_epochs)
        return _SettleOutcome(
            result=result,
            graph=rebuilt,
            trustworthiness=self._trustworthiness(vectors, ids, result),
        )

    def _trustworthiness(
        self,
        vectors: np.ndarray,
        ids: Sequence[int],
        result: OptimizationResult,
    ) -> Optional[float]:
        keep = [pos for pos, chunk_id in enumerate(ids) if chunk_id in result.coords]
        if len(keep) < _TRUST_MIN_POINTS:
            return None
        embedded = np.vstack([result.coords[ids[pos]] for pos in keep])
        n_neighbors = min(_TRUST_MAX_NEIGHBORS, (len(keep) - 1) // 2)
        score = trustworthiness(vectors[keep], embedded, n_neighbors=n_neighbors, metric=self.metric)
        return float(score)

    # -- reads ----------------------------------------------------------

    async def search(
        self,
        query: str,
        *,
        k: int | None = None,
        dims: int | None = None,
        method: SearchMethod = SearchMethod.LAYOUT,
    ) -> SearchResponse:
        started = time.perf_counter()
        method = SearchMethod(method)
        top_n = k or self._settings.search_default_k
        dims = dims or self.n_components
        if method is SearchMethod.LAYOUT and dims != self.n_components:
            raise ValueError(f"Layout is {self.n_components}-D; use method=pca for a {dims}-D view")
        if dims not in (2, 3):
            raise ValueError("dims must be 2 or 3")

        hits = await self.query.search_text(query, top_n)
        coords: list[Optional[Sequence[float]]]
        if method is SearchMethod.PCA and hits:
            vectors = self.projector.index.matrix.take([hit.chunk_id for hit in hits])
            coords = [tuple(row) for row in pca_coordinates(vectors, dims)]
        else:
            coords = [hit.coordinates for hit in hits]

        points = []
        for hit, position in zip(hits, coords):
            meta = self._meta.get(hit.chunk_id)
            if meta is None:
                continue
            points.append(
                SearchPoint(
                    id=hit.chunk_id,
                    source=meta.source,
                    chunk_index=meta.chunk_index,
                    score=hit.score,
                    text_preview=meta.preview,
                    x=float(position[0]) if position is not None else None,
                    y=float(position[1]) if position is not None else None,
                    z=float(position[2]) if position is not None and len(position) > 2 else None,
                    state=hit.state,
                )
            )
        _LOGGER.info(
            "Search returned %d hits (method=%s) in %.1f ms",
            len(points),
            method.value,
            (time.perf_counter() - started) * 1000.0,
        )
        return SearchResponse(query=query, method=method, dims=dims, points=points)

    async def status(self) -> CorpusStatus:
        state = await self.snapshots.load_state()
        counts = {member.value: 0 for member in PointState}
        for point_state in self.projector.layout.states.values():
            counts[point_state.value] += 1
        return CorpusStatus(
            total_chunks=len(self._meta),
            dimension=self.store.dimension,
            metric=self.metric,
            n_components=self.n_components,
            index_method=self.projector.index.method,
            states=counts,
            inserts_since_settle=self._inserts_since_settle,
            settle_count=state.settle_count,
            last_settled_at=state.last_settled_at,
            trustworthiness=state.trustworthiness,
            settling=self._settling,
        )

    def layout_points(self) -> LayoutResponse:
        layout = self.projector.layout
        points = []
        for chunk_id in layout.ids():
            meta = self._meta.get(chunk_id)
            if meta is None:
                continue
            coords = layout.coords[chunk_id]
            points.append(
                LayoutPointSchema(
                    id=chunk_id,
                    source=meta.source,
                    chunk_index=meta.chunk_index,
                    text_preview=meta.preview,
                    x=float(coords[0]),
                    y=float(coords[1]),
                    z=float(coords[2]) if coords.shape[0] > 2 else None,
                    state=layout.states[chunk_id].value,
                )
            )
        return LayoutResponse(n_components=layout.n_components, points=points)

    async def chunk(self, chunk_id: int) -> ChunkResource:
        stored = await self.store.get(chunk_id)
        layout = self.projector.layout
        coords = layout.coords.get(chunk_id)
        state = layout.states.get(chunk_id)
        return ChunkResource(
            id=stored.id,
            source=stored.source,
            chunk_index=stored.chunk_index,
            text=stored.text,
            text_hash=stored.text_hash,
            dim=stored.dim,
            created_at=stored.created_at,
            state=state.value if state is not None else None,
            coordinates=[float(c) for c in coords] if coords is not None else None,
            neighbors=[
                NeighborSchema(id=entry.id, distance=entry.distance, weight=entry.weight)
                for entry in self.projector.graph.neighbors(chunk_id)
            ],
        )

    def export_frame(self) -> pd.DataFrame:
        columns = ["id", "source", "chunk_index", "state", "x", "y"]
        if self.n_components > 2:
            columns.append("z")
        columns.append("text_preview")
        rows = [point.model_dump() for point in self.layout_points().points]
        return pd.DataFrame(rows, columns=columns)

    async def close(self) -> None:
        task = self._settle_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)
        self._executor.shutdown(wait=True)


def _failure(draft: ChunkDraft, exc: Exception) -> ChunkFailure:
    return ChunkFailure(
        source=draft.source,
        chunk_index=draft.chunk_index,
        error=type(exc).__name__,
        detail=str(exc),
    )


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _LOGGER.error("Background global settle failed", exc_info=exc)
