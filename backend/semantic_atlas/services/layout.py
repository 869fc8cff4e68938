"""Low-dimensional layout state and the force-directed optimiser.

The optimiser follows the fuzzy-simplicial-set recipe: sampled attractive
updates along graph edges, negative-sampled repulsion, clipped gradients and a
linearly decaying learning rate. Epochs are vectorised over the sampled edges.

Classes:
    PointState: Forward-only placement lifecycle of a point.
    LayoutState: Coordinates, anchors and states for every placed chunk.
    OptimizationResult: Coordinates produced by one optimisation run.
    LayoutOptimizer: Initialises and refines layouts from a `NeighborGraph`.

Functions:
    fit_ab(spread, min_dist): Fit the low-dimensional similarity curve parameters.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Iterable, Optional, Sequence

import numpy as np
from scipy.linalg import eigh
from scipy.optimize import curve_fit
from scipy.sparse import diags, identity
from scipy.sparse.linalg import ArpackError, ArpackNoConvergence, eigsh

from semantic_atlas.core.config import Settings
from semantic_atlas.core.errors import OptimizationDiverged
from semantic_atlas.services.neighbors import NeighborGraph

_LOGGER = logging.getLogger(__name__)

_DENSE_EIGEN_LIMIT = 256
_REPULSION_EPSILON = 0.001
_COINCIDENT_PUSH = 4.0


class PointState(str, Enum):
    INGESTED = "ingested"
    LOCALLY_PLACED = "locally_placed"
    SETTLED = "settled"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)

    def advance(self, target: "PointState") -> "PointState":
        return target if target.rank > self.rank else self


_STATE_ORDER = (PointState.INGESTED, PointState.LOCALLY_PLACED, PointState.SETTLED)


@lru_cache(maxsize=32)
def fit_ab(spread: float, min_dist: float) -> tuple[float, float]:
    """Fit `a`, `b` so that `1 / (1 + a x^(2b))` tracks the target membership curve."""

    def curve(x, a, b):
        return 1.0 / (1.0 + a * x ** (2 * b))

    xv = np.linspace(0, spread * 3, 300)
    yv = np.zeros(xv.shape)
    yv[xv < min_dist] = 1.0
    yv[xv >= min_dist] = np.exp(-(xv[xv >= min_dist] - min_dist) / spread)
    params, _ = curve_fit(curve, xv, yv)
    return float(params[0]), float(params[1])


@dataclass(slots=True)
class LayoutState:
    n_components: int
    coords: dict[int, np.ndarray] = field(default_factory=dict)
    states: dict[int, PointState] = field(default_factory=dict)
    anchors: dict[int, np.ndarray] = field(default_factory=dict)

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self.coords

    def __len__(self) -> int:
        return len(self.coords)

    def ids(self) -> list[int]:
        return sorted(self.coords)

    def place(self, chunk_id: int, position: np.ndarray) -> None:
        self.coords[chunk_id] = np.asarray(position, dtype=np.float64).reshape(self.n_components).copy()
        self.states.setdefault(chunk_id, PointState.INGESTED)

    def mark(self, chunk_id: int, state: PointState) -> PointState:
        current = self.states.get(chunk_id, PointState.INGESTED)
        self.states[chunk_id] = current.advance(state)
        return self.states[chunk_id]

    def settle(self, chunk_id: int) -> None:
        self.mark(chunk_id, PointState.SETTLED)
        self.anchors[chunk_id] = self.coords[chunk_id].copy()

    def remove(self, chunk_id: int) -> None:
        self.coords.pop(chunk_id, None)
        self.states.pop(chunk_id, None)
        self.anchors.pop(chunk_id, None)

    def centroid(self, exclude: Iterable[int] = ()) -> Optional[np.ndarray]:
        skip = set(exclude)
        points = [pos for chunk_id, pos in self.coords.items() if chunk_id not in skip]
        if not points:
            return None
        return np.mean(points, axis=0)

    def matrix(self, ids: Sequence[int]) -> np.ndarray:
        if not ids:
            return np.zeros((0, self.n_components), dtype=np.float64)
        return np.vstack([self.coords[chunk_id] for chunk_id in ids])

    def copy(self) -> "LayoutState":
        return LayoutState(
            n_components=self.n_components,
            coords={key: value.copy() for key, value in self.coords.items()},
            states=dict(self.states),
            anchors={key: value.copy() for key, value in self.anchors.items()},
        )


@dataclass(slots=True)
class OptimizationResult:
    coords: dict[int, np.ndarray]
    epochs: int
    corrupted: list[int] = field(default_factory=list)
    elapsed_ms: float = 0.0


class LayoutOptimizer:
    def __init__(
        self,
        *,
        n_components: int = 2,
        min_dist: float = 0.1,
        spread: float = 1.0,
        learning_rate: float = 1.0,
        negative_sample_rate: int = 5,
        repulsion_strength: float = 1.0,
        max_step: float = 4.0,
        max_coordinate: float = 1.0e4,
        layout_radius: float = 10.0,
        seed: int = 42,
    ) -> None:
        if n_components not in (2, 3):
            raise ValueError("Layouts are 2-D or 3-D")
        self.n_components = n_components
        self.learning_rate = learning_rate
        self.negative_sample_rate = negative_sample_rate
        self.repulsion_strength = repulsion_strength
        self.max_step = max_step
        self.max_coordinate = max_coordinate
        self.layout_radius = layout_radius
        self.seed = seed
        self.a, self.b = fit_ab(spread, min_dist)

    @classmethod
    def from_settings(cls, settings: Settings, n_components: int | None = None) -> "LayoutOptimizer":
        return cls(
            n_components=n_components or settings.layout_components,
            min_dist=settings.min_dist,
            spread=settings.spread,
            learning_rate=settings.learning_rate,
            negative_sample_rate=settings.negative_sample_rate,
            repulsion_strength=settings.repulsion_strength,
            max_step=settings.max_step,
            max_coordinate=settings.max_coordinate,
            layout_radius=settings.layout_radius,
            seed=settings.random_seed,
        )

    # -- initialisation -------------------------------------------------

    def initialize(
        self,
        layout: LayoutState,
        graph: NeighborGraph,
        ids: Sequence[int],
        rng: np.random.Generator,
    ) -> list[int]:
        """Give every unplaced id a starting position; returns the ids placed."""

        missing = [chunk_id for chunk_id in ids if chunk_id not in layout]
        if not missing:
            return []

        if not len(layout) and len(missing) == 1:
            layout.place(missing[0], np.zeros(self.n_components))
            return missing

        initial = None
        if not len(layout):
            initial = self.spectral_layout(graph, missing)
        if initial is None:
            initial = rng.uniform(-self.layout_radius, self.layout_radius, size=(len(missing), self.n_components))
            centre = layout.centroid()
            if centre is not None:
                initial += centre
        for chunk_id, position in zip(missing, initial):
            layout.place(chunk_id, position)
        return missing

    def spectral_layout(self, graph: NeighborGraph, ids: Sequence[int]) -> Optional[np.ndarray]:
        """Eigenvectors of the normalised graph Laplacian, scaled to `layout_radius`.

        Returns None when the graph is too small or the eigensolver fails.
        """

        size = len(ids)
        dim = self.n_components
        if size <= dim + 1:
            return None

        adjacency = graph.adjacency(list(ids))
        degrees = np.asarray(adjacency.sum(axis=1)).ravel()
        if not np.any(degrees > 0):
            return None
        inv_sqrt = np.zeros_like(degrees)
        nonzero = degrees > 0
        inv_sqrt[nonzero] = 1.0 / np.sqrt(degrees[nonzero])
        scale = diags(inv_sqrt)
        laplacian = identity(size, format="csr") - scale @ adjacency @ scale

        try:
            if size <= _DENSE_EIGEN_LIMIT:
                _, vectors = eigh(laplacian.toarray())
                embedding = vectors[:, 1 : dim + 1]
            else:
                eigenvalues, vectors = eigsh(
                    laplacian,
                    k=dim + 1,
                    which="SM",
                    tol=1e-4,
                    v0=np.ones(size),
                    maxiter=size * 5,
                )
                order = np.argsort(eigenvalues)
                embedding = vectors[:, order[1 : dim + 1]]
        except (ArpackError, ArpackNoConvergence, np.linalg.LinAlgError, ValueError) as exc:
            _LOGGER.warning("Spectral initialisation failed, using random scatter: %s", exc)
            return None

        embedding = embedding - embedding.mean(axis=0)
        extent = float(np.max(np.abs(embedding)))
        if not np.isfinite(extent) or extent == 0.0:
            return None
        return embedding * (self.layout_radius / extent)

    # -- optimisation ---------------------------------------------------

    def optimize(
        self,
        layout: LayoutState,
        graph: NeighborGraph,
        epochs: int,
        *,
        movable: Iterable[int] | None = None,
        edges: Sequence[tuple[int, int, float]] | None = None,
        negative_pool: Sequence[int] | None = None,
        seed: int | None = None,
    ) -> OptimizationResult:
        """Refine coordinates for `epochs` epochs and return the new positions.

        `layout` gains initial positions for unplaced graph points but its
        existing coordinates are not modified; callers apply the result.
        Restricting `movable`, `edges` and `negative_pool` turns this into a
        local settle over a neighbourhood.
        """

        started = time.perf_counter()
        rng = np.random.default_rng(self.seed if seed is None else seed)

        if edges is None:
            edges = graph.edges()
        if movable is None:
            self.initialize(layout, graph, graph.ids(), rng)
            ids = sorted(set(layout.ids()) | set(graph.ids()))
            movable_ids = set(ids)
        else:
            movable_ids = set(movable)
            working = set(movable_ids)
            for i, j, _ in edges:
                working.update((i, j))
            working.update(negative_pool or ())
            ids = sorted(working)
            self.initialize(layout, graph, ids, rng)

        position = {chunk_id: pos for pos, chunk_id in enumerate(ids)}
        embedding = layout.matrix(ids)
        initial = embedding.copy()

        edge_list = [(i, j, w) for i, j, w in edges if i in position and j in position]
        if not edge_list or epochs <= 0:
            return OptimizationResult(
                coords={chunk_id: embedding[position[chunk_id]].copy() for chunk_id in movable_ids if chunk_id in position},
                epochs=0,
                elapsed_ms=(time.perf_counter() - started) * 1000.0,
            )

        heads = np.array([position[i] for i, _, _ in edge_list], dtype=np.int64)
        tails = np.array([position[j] for _, j, _ in edge_list], dtype=np.int64)
        weights = np.array([w for _, _, w in edge_list], dtype=np.float64)
        probabilities = weights / weights.max()

        mobile = np.zeros(len(ids), dtype=bool)
        mobile[[position[chunk_id] for chunk_id in movable_ids if chunk_id in position]] = True
        if negative_pool is None:
            pool = np.arange(len(ids), dtype=np.int64)
        else:
            pool = np.array(sorted(position[chunk_id] for chunk_id in set(negative_pool) if chunk_id in position), dtype=np.int64)

        corrupted: list[int] = []
        for epoch in range(epochs):
            alpha = self.learning_rate * (1.0 - epoch / epochs)
            before = embedding.copy()
            self._run_epoch(embedding, heads, tails, probabilities, mobile, pool, alpha, rng)
            try:
                self._check_bounds(embedding, mobile)
            except OptimizationDiverged as exc:
                _LOGGER.warning("Epoch %d diverged for %d point(s); retrying", epoch, len(exc.rows))
                embedding[:] = before
                embedding[exc.rows] = initial[exc.rows]
                self._run_epoch(embedding, heads, tails, probabilities, mobile, pool, alpha, rng)
                try:
                    self._check_bounds(embedding, mobile)
                except OptimizationDiverged as again:
                    embedding[again.rows] = initial[again.rows]
                    mobile[again.rows] = False
                    corrupted.extend(ids[row] for row in again.rows)

        elapsed = (time.perf_counter() - started) * 1000.0
        if corrupted:
            _LOGGER.error("Layout corrupted for chunk ids %s", sorted(corrupted))
        return OptimizationResult(
            coords={chunk_id: embedding[position[chunk_id]].copy() for chunk_id in movable_ids if chunk_id in position},
            epochs=epochs,
            corrupted=sorted(corrupted),
            elapsed_ms=elapsed,
        )

    def _check_bounds(self, embedding: np.ndarray, mobile: np.ndarray) -> None:
        bad = ~np.all(np.isfinite(embedding), axis=1)
        with np.errstate(invalid="ignore"):
            bad |= np.any(np.abs(embedding) > self.max_coordinate, axis=1)
        bad &= mobile
        if np.any(bad):
            raise OptimizationDiverged(np.flatnonzero(bad).tolist())

    def _run_epoch(
        self,
        embedding: np.ndarray,
        heads: np.ndarray,
        tails: np.ndarray,
        probabilities: np.ndarray,
        mobile: np.ndarray,
        pool: np.ndarray,
        alpha: float,
        rng: np.random.Generator,
    ) -> None:
        a, b = self.a, self.b
        sampled = rng.random(len(heads)) < probabilities
        head = heads[sampled]
        tail = tails[sampled]
        if head.size == 0:
            return

        diff = embedding[head] - embedding[tail]
        dist_sq = np.sum(diff * diff, axis=1)
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            coeff = np.where(
                dist_sq > 0.0,
                -2.0 * a * b * np.power(dist_sq, b - 1.0) / (1.0 + a * np.power(dist_sq, b)),
                0.0,
            )
        grad = np.clip(coeff[:, None] * diff, -self.max_step, self.max_step)
        grad = np.nan_to_num(grad, nan=0.0)
        move_head = mobile[head]
        move_tail = mobile[tail]
        np.add.at(embedding, head[move_head], alpha * grad[move_head])
        np.add.at(embedding, tail[move_tail], -alpha * grad[move_tail])

        if self.negative_sample_rate <= 0 or pool.size == 0:
            return
        rep_head = np.repeat(head, self.negative_sample_rate)
        rep_tail = np.repeat(tail, self.negative_sample_rate)
        negatives = pool[rng.integers(0, pool.size, size=rep_head.size)]
        keep = (negatives != rep_head) & (negatives != rep_tail) & mobile[rep_head]
        rep_head = rep_head[keep]
        negatives = negatives[keep]
        if rep_head.size == 0:
            return

        diff = embedding[rep_head] - embedding[negatives]
        dist_sq = np.sum(diff * diff, axis=1)
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            coeff = 2.0 * self.repulsion_strength * b / (
                (_REPULSION_EPSILON + dist_sq) * (1.0 + a * np.power(dist_sq, b))
            )
        grad = np.where(
            (dist_sq > 0.0)[:, None],
            np.clip(coeff[:, None] * diff, -self.max_step, self.max_step),
            _COINCIDENT_PUSH,
        )
        grad = np.nan_to_num(grad, nan=0.0)
        np.add.at(embedding, rep_head, alpha * grad)
