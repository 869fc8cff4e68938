"""Incremental placement of new chunks into an existing layout.

Classes:
    PlacementResult: Bookkeeping of what one insert changed.
    IncrementalProjector: Links, positions and locally settles points one at a time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from semantic_atlas.core.config import Settings
from semantic_atlas.core.errors import NotFound
from semantic_atlas.services.layout import LayoutOptimizer, LayoutState, PointState
from semantic_atlas.services.neighbors import AdaptiveNeighborIndex, NeighborGraph, NeighborGraphBuilder
from semantic_atlas.services.vector_store import StoredChunk, VectorStore

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PlacementResult:
    chunk_id: int
    position: np.ndarray
    relinked: set[int] = field(default_factory=set)
    moved: set[int] = field(default_factory=set)
    corrupted: list[int] = field(default_factory=list)


class IncrementalProjector:
    """Owns the live neighbour graph and layout for one corpus.

    Everything here is synchronous and must run under the corpus writer lock.
    """

    def __init__(
        self,
        store: VectorStore,
        index: AdaptiveNeighborIndex,
        graph: NeighborGraph,
        layout: LayoutState,
        optimizer: LayoutOptimizer,
        *,
        local_epochs: int = 30,
        local_move_bound: float = 0.5,
        negative_pool_size: int = 64,
        placement_jitter: float = 0.01,
        seed: int = 42,
    ) -> None:
        self.store = store
        self.index = index
        self.graph = graph
        self.layout = layout
        self.optimizer = optimizer
        self.builder = NeighborGraphBuilder(index, graph)
        self.local_epochs = local_epochs
        self.local_move_bound = local_move_bound
        self.negative_pool_size = negative_pool_size
        self.placement_jitter = placement_jitter
        self.seed = seed

    @classmethod
    def from_settings(
        cls,
        store: VectorStore,
        settings: Settings,
        *,
        metric: str | None = None,
        n_components: int | None = None,
    ) -> "IncrementalProjector":
        components = n_components or settings.layout_components
        index = AdaptiveNeighborIndex(
            metric or settings.distance_metric,
            threshold=settings.approximate_threshold,
            n_tables=settings.lsh_tables,
            n_planes=settings.lsh_hyperplanes,
            seed=settings.random_seed,
        )
        return cls(
            store,
            index,
            NeighborGraph(settings.n_neighbors),
            LayoutState(n_components=components),
            LayoutOptimizer.from_settings(settings, n_components=components),
            local_epochs=settings.local_epochs,
            local_move_bound=settings.local_move_bound,
            negative_pool_size=settings.negative_pool_size,
            placement_jitter=settings.placement_jitter,
            seed=settings.random_seed,
        )

    async def insert(self, chunk: StoredChunk) -> PlacementResult:
        """Persist `chunk`, then link and position it, unlinking any earlier copy of its id.

        The graph is untouched when the store write fails.
        """

        chunk_id = await self.store.put(chunk)
        relinked: set[int] = set()
        if chunk_id in self.index.matrix:
            relinked = self.unlink(chunk_id)
        result = self.place(chunk_id, chunk.vector)
        result.relinked |= relinked
        return result

    def place(self, chunk_id: int, vector: np.ndarray) -> PlacementResult:
        relinked = self.builder.add(chunk_id, vector)
        result = self.position(chunk_id)
        result.relinked |= relinked
        return result

    def position(self, chunk_id: int) -> PlacementResult:
        """Seed a linked point near its neighbours and settle the neighbourhood."""

        self.layout.remove(chunk_id)
        start = self._initial_position(chunk_id)
        self.layout.place(chunk_id, start)

        neighbours = [entry.id for entry in self.graph.neighbors(chunk_id) if entry.id in self.layout]
        movable = {chunk_id, *neighbours}
        edges = self.graph.edges(touching=movable)
        pool = self._negative_pool(chunk_id)

        optimised = self.optimizer.optimize(
            self.layout,
            self.graph,
            self.local_epochs,
            movable=movable,
            edges=edges,
            negative_pool=pool,
            seed=self._point_seed(chunk_id),
        )

        for point_id, coords in optimised.coords.items():
            if point_id != chunk_id and self.layout.states.get(point_id) == PointState.SETTLED:
                coords = self._contain(point_id, coords)
            self.layout.coords[point_id] = coords
        self.layout.mark(chunk_id, PointState.LOCALLY_PLACED)

        return PlacementResult(
            chunk_id=chunk_id,
            position=self.layout.coords[chunk_id].copy(),
            moved=set(optimised.coords),
            corrupted=list(optimised.corrupted),
        )

    def unlink(self, chunk_id: int) -> set[int]:
        """Remove a point from graph and layout; returns ids whose lists were recomputed."""

        if chunk_id not in self.index.matrix:
            raise NotFound(chunk_id)
        changed = self.builder.remove(chunk_id)
        self.layout.remove(chunk_id)
        return changed

    def replace_graph(self, graph: NeighborGraph) -> None:
        self.graph = graph
        self.builder.graph = graph

    def _point_seed(self, chunk_id: int) -> int:
        return int(np.random.SeedSequence([self.seed, chunk_id]).generate_state(1)[0])

    def _initial_position(self, chunk_id: int) -> np.ndarray:
        dims = self.layout.n_components
        placed = [entry for entry in self.graph.neighbors(chunk_id) if entry.id in self.layout]
        if placed:
            weights = np.array([entry.weight for entry in placed], dtype=np.float64)
            points = self.layout.matrix([entry.id for entry in placed])
            if weights.sum() > 0:
                start = (weights[:, None] * points).sum(axis=0) / weights.sum()
            else:
                start = points.mean(axis=0)
        else:
            centre = self.layout.centroid(exclude=[chunk_id])
            start = centre if centre is not None else np.zeros(dims)

        if not len(self.layout):
            return np.zeros(dims)
        rng = np.random.default_rng([self.seed, chunk_id])
        return start + rng.normal(scale=self.placement_jitter, size=dims)

    def _negative_pool(self, chunk_id: int) -> list[int]:
        candidates = [point_id for point_id in self.layout.coords if point_id != chunk_id]
        if len(candidates) <= self.negative_pool_size:
            return candidates
        rng = np.random.default_rng([self.seed, chunk_id, len(candidates)])
        chosen = rng.choice(len(candidates), size=self.negative_pool_size, replace=False)
        return [candidates[i] for i in sorted(chosen)]

    def _contain(self, chunk_id: int, coords: np.ndarray) -> np.ndarray:
        anchor = self.layout.anchors.get(chunk_id)
        if anchor is None:
            return coords
        offset = coords - anchor
        drift = float(np.linalg.norm(offset))
        if drift <= self.local_move_bound:
            return coords
        return anchor + offset * (self.local_move_bound / drift)
