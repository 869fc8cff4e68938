"""Nearest-neighbour indexes and the fuzzy neighbour graph.

Classes:
    Neighbor: One entry of a directed neighbour list.
    VectorMatrix: Growable row storage keyed by chunk id, held at float32 precision.
    NeighborIndex: Interface shared by the exact and approximate indexes.
    BruteForceIndex: Exact scan over every stored vector.
    RandomProjectionIndex: Signed-hyperplane bucket index with single-bit multi-probe.
    AdaptiveNeighborIndex: Switches between the two by corpus size.
    NeighborGraph: Directed kNN lists with smooth-kNN weights and union symmetrisation.
    NeighborGraphBuilder: Keeps the graph consistent with the index on insert and removal.

Functions:
    compute_distances(matrix, norms, vector, metric): Distances from one vector to many rows.
    smooth_knn_weights(distances, k): Membership strengths of one neighbour list.
    select_index_method(count, threshold): Choose "brute" or "lsh" for a corpus size.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np

from semantic_atlas.core.errors import DimensionMismatch, NotFound

_LOGGER = logging.getLogger(__name__)

METRICS = ("cosine", "euclidean")
_ROUNDOFF = 1e-9
_SMOOTH_K_TOLERANCE = 1e-5
_SMOOTH_K_ITERATIONS = 64
_MIN_K_DIST_SCALE = 1e-3
_MIN_MEMBERSHIP = 1e-3


@dataclass(slots=True, frozen=True)
class Neighbor:
    id: int
    distance: float
    weight: float = 0.0


def compute_distances(
    matrix: np.ndarray,
    norms: np.ndarray,
    vector: np.ndarray,
    metric: str,
) -> np.ndarray:
    """Distances from `vector` to every row of `matrix`, in float64."""

    if matrix.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)
    query = np.asarray(vector, dtype=np.float64)
    if metric == "cosine":
        query_norm = float(np.linalg.norm(query))
        denom = norms * query_norm
        dots = matrix @ query
        cosine = np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)
        distances = 1.0 - np.clip(cosine, -1.0, 1.0)
    elif metric == "euclidean":
        distances = np.sqrt(np.sum((matrix - query) ** 2, axis=1))
    else:
        raise ValueError(f"Unsupported metric '{metric}'")
    distances[distances < _ROUNDOFF] = 0.0
    return distances


def _ranked(ids: np.ndarray, distances: np.ndarray, k: int | None = None) -> list[tuple[int, float]]:
    order = np.lexsort((ids, distances))
    if k is not None:
        order = order[:k]
    return [(int(ids[i]), float(distances[i])) for i in order]


class VectorMatrix:
    """Dense row storage with O(1) swap-removal and an id to row map."""

    def __init__(self, dim: int | None = None, capacity: int = 64) -> None:
        self._dim = dim
        self._capacity = capacity
        self._size = 0
        self._data = np.zeros((capacity, dim or 0), dtype=np.float64)
        self._norms = np.zeros(capacity, dtype=np.float64)
        self._ids = np.zeros(capacity, dtype=np.int64)
        self._rows: dict[int, int] = {}

    @property
    def dim(self) -> int | None:
        return self._dim

    def __len__(self) -> int:
        return self._size

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._rows

    @property
    def ids(self) -> np.ndarray:
        return self._ids[: self._size]

    @property
    def rows(self) -> np.ndarray:
        return self._data[: self._size]

    @property
    def norms(self) -> np.ndarray:
        return self._norms[: self._size]

    def add(self, chunk_id: int, vector: np.ndarray) -> None:
        values = np.asarray(vector, dtype=np.float32).astype(np.float64).reshape(-1)
        if self._dim is None:
            self._dim = int(values.shape[0])
            self._data = np.zeros((self._capacity, self._dim), dtype=np.float64)
        elif values.shape[0] != self._dim:
            raise DimensionMismatch(self._dim, int(values.shape[0]))

        row = self._rows.get(chunk_id)
        if row is None:
            if self._size == self._capacity:
                self._grow()
            row = self._size
            self._size += 1
            self._rows[chunk_id] = row
            self._ids[row] = chunk_id
        self._data[row] = values
        self._norms[row] = float(np.linalg.norm(values))

    def remove(self, chunk_id: int) -> None:
        row = self._rows.pop(chunk_id, None)
        if row is None:
            raise NotFound(chunk_id)
        last = self._size - 1
        if row != last:
            moved = int(self._ids[last])
            self._data[row] = self._data[last]
            self._norms[row] = self._norms[last]
            self._ids[row] = moved
            self._rows[moved] = row
        self._size = last

    def get(self, chunk_id: int) -> np.ndarray:
        row = self._rows.get(chunk_id)
        if row is None:
            raise NotFound(chunk_id)
        return self._data[row]

    def take(self, chunk_ids: Sequence[int]) -> np.ndarray:
        rows = [self._rows[chunk_id] for chunk_id in chunk_ids]
        return self._data[rows].copy()

    def distances(self, vector: np.ndarray, metric: str, rows: np.ndarray | None = None) -> np.ndarray:
        if rows is None:
            return compute_distances(self.rows, self.norms, vector, metric)
        return compute_distances(self._data[rows], self._norms[rows], vector, metric)

    def row_of(self, chunk_id: int) -> int:
        return self._rows[chunk_id]

    def _grow(self) -> None:
        self._capacity *= 2
        data = np.zeros((self._capacity, self._dim or 0), dtype=np.float64)
        data[: self._size] = self._data[: self._size]
        norms = np.zeros(self._capacity, dtype=np.float64)
        norms[: self._size] = self._norms[: self._size]
        ids = np.zeros(self._capacity, dtype=np.int64)
        ids[: self._size] = self._ids[: self._size]
        self._data, self._norms, self._ids = data, norms, ids


class NeighborIndex(ABC):
    """Answers k-nearest and candidate-scan queries over a `VectorMatrix`."""

    method: str = "none"

    def __init__(self, matrix: VectorMatrix, metric: str) -> None:
        if metric not in METRICS:
            raise ValueError(f"Unsupported metric '{metric}'")
        self.matrix = matrix
        self.metric = metric

    def __len__(self) -> int:
        return len(self.matrix)

    def add(self, chunk_id: int, vector: np.ndarray) -> None:
        """Hook for indexes keeping extra structures; the matrix is shared."""

    def remove(self, chunk_id: int) -> None:
        """Hook for indexes keeping extra structures; the matrix is shared."""

    @abstractmethod
    def scan(self, vector: np.ndarray, exclude: int | None = None) -> tuple[np.ndarray, np.ndarray]:
        """Return candidate ids and their distances to `vector`."""

    def query(self, vector: np.ndarray, k: int, exclude: int | None = None) -> list[tuple[int, float]]:
        if k <= 0 or len(self.matrix) == 0:
            return []
        ids, distances = self.scan(vector, exclude=exclude)
        return _ranked(ids, distances, k)


class BruteForceIndex(NeighborIndex):
    method = "brute"

    def scan(self, vector: np.ndarray, exclude: int | None = None) -> tuple[np.ndarray, np.ndarray]:
        ids = self.matrix.ids
        distances = self.matrix.distances(vector, self.metric)
        if exclude is not None and exclude in self.matrix:
            keep = ids != exclude
            return ids[keep], distances[keep]
        return ids.copy(), distances


class RandomProjectionIndex(NeighborIndex):
    """Locality-sensitive buckets from signed random hyperplanes.

    Each table hashes a vector to the sign pattern of `n_planes` projections.
    A query visits its own bucket plus every bucket one bit away in each table.
    When the candidates number fewer than k the query falls back to a full scan.
    """

    method = "lsh"

    def __init__(
        self,
        matrix: VectorMatrix,
        metric: str,
        *,
        n_tables: int = 6,
        n_planes: int = 8,
        seed: int = 42,
    ) -> None:
        super().__init__(matrix, metric)
        self.n_tables = n_tables
        self.n_planes = n_planes
        self._seed = seed
        self._planes: np.ndarray | None = None
        self._offset: np.ndarray | None = None
        self._tables: list[dict[int, set[int]]] = [defaultdict(set) for _ in range(n_tables)]
        self._keys: dict[int, tuple[int, ...]] = {}
        self._weights = 1 << np.arange(n_planes, dtype=np.int64)
        self._fallback = BruteForceIndex(matrix, metric)
        self._k_hint = 1

    def _ensure_planes(self) -> None:
        if self._planes is not None or self.matrix.dim is None:
            return
        rng = np.random.default_rng(self._seed)
        self._planes = rng.standard_normal((self.n_tables, self.n_planes, self.matrix.dim))
        if self.metric == "euclidean" and len(self.matrix):
            self._offset = self.matrix.rows.mean(axis=0)
        else:
            self._offset = np.zeros(self.matrix.dim, dtype=np.float64)

    def _keys_for(self, vector: np.ndarray) -> tuple[int, ...]:
        self._ensure_planes()
        centred = np.asarray(vector, dtype=np.float64) - self._offset
        signs = (self._planes @ centred) > 0
        return tuple(int(code) for code in signs.astype(np.int64) @ self._weights)

    def build(self) -> None:
        self._planes = None
        self._tables = [defaultdict(set) for _ in range(self.n_tables)]
        self._keys.clear()
        for chunk_id, vector in zip(self.matrix.ids.tolist(), self.matrix.rows):
            self.add(chunk_id, vector)

    def add(self, chunk_id: int, vector: np.ndarray) -> None:
        if chunk_id in self._keys:
            self.remove(chunk_id)
        keys = self._keys_for(vector)
        for table, key in zip(self._tables, keys):
            table[key].add(chunk_id)
        self._keys[chunk_id] = keys

    def remove(self, chunk_id: int) -> None:
        keys = self._keys.pop(chunk_id, None)
        if keys is None:
            return
        for table, key in zip(self._tables, keys):
            bucket = table.get(key)
            if bucket is None:
                continue
            bucket.discard(chunk_id)
            if not bucket:
                del table[key]

    def candidates(self, vector: np.ndarray) -> set[int]:
        found: set[int] = set()
        for table, key in zip(self._tables, self._keys_for(vector)):
            found.update(table.get(key, ()))
            for bit in range(self.n_planes):
                found.update(table.get(key ^ (1 << bit), ()))
        return found

    def scan(self, vector: np.ndarray, exclude: int | None = None) -> tuple[np.ndarray, np.ndarray]:
        found = self.candidates(vector)
        found.discard(exclude)
        if len(found) < self._k_hint:
            return self._fallback.scan(vector, exclude=exclude)
        ids = np.fromiter(sorted(found), dtype=np.int64, count=len(found))
        rows = np.fromiter((self.matrix.row_of(i) for i in ids), dtype=np.int64, count=len(ids))
        return ids, self.matrix.distances(vector, self.metric, rows=rows)

    def query(self, vector: np.ndarray, k: int, exclude: int | None = None) -> list[tuple[int, float]]:
        self._k_hint = k
        return super().query(vector, k, exclude=exclude)


def select_index_method(count: int, threshold: int) -> str:
    """Pick an index backend based on corpus size."""

    if count == 0:
        return "none"
    if count >= threshold:
        return "lsh"
    return "brute"


class AdaptiveNeighborIndex(NeighborIndex):
    """Exact below `threshold` points, random-projection buckets at or above it."""

    def __init__(
        self,
        metric: str,
        *,
        threshold: int = 2000,
        n_tables: int = 6,
        n_planes: int = 8,
        seed: int = 42,
    ) -> None:
        super().__init__(VectorMatrix(), metric)
        self.threshold = threshold
        self._brute = BruteForceIndex(self.matrix, metric)
        self._lsh = RandomProjectionIndex(
            self.matrix, metric, n_tables=n_tables, n_planes=n_planes, seed=seed
        )
        self._lsh_ready = False

    @property
    def method(self) -> str:  # type: ignore[override]
        return select_index_method(len(self.matrix), self.threshold)

    @property
    def active(self) -> NeighborIndex:
        if self.method == "lsh":
            if not self._lsh_ready:
                _LOGGER.info("Switching to random-projection index at %d points", len(self.matrix))
                self._lsh.build()
                self._lsh_ready = True
            return self._lsh
        return self._brute

    def add(self, chunk_id: int, vector: np.ndarray) -> None:
        self.matrix.add(chunk_id, vector)
        if self._lsh_ready:
            self._lsh.add(chunk_id, vector)

    def remove(self, chunk_id: int) -> None:
        self.matrix.remove(chunk_id)
        if self._lsh_ready:
            self._lsh.remove(chunk_id)

    def vector(self, chunk_id: int) -> np.ndarray:
        return self.matrix.get(chunk_id)

    def scan(self, vector: np.ndarray, exclude: int | None = None) -> tuple[np.ndarray, np.ndarray]:
        return self.active.scan(vector, exclude=exclude)

    def query(self, vector: np.ndarray, k: int, exclude: int | None = None) -> list[tuple[int, float]]:
        return self.active.query(vector, k, exclude=exclude)


def smooth_knn_weights(distances: Sequence[float], k: int) -> np.ndarray:
    """Membership strengths `exp(-max(0, d - rho) / sigma)` for one neighbour list.

    k is capped at the list length. sigma is found by binary search so the
    strengths sum to log2(k). When that sum is out of reach (lists of one or
    two entries, or ties at rho) the search is skipped. sigma is floored so the
    farthest strength stays at or above 1e-3, which keeps strengths in (0, 1]
    and strictly decreasing in distance.
    """

    dist = np.asarray(distances, dtype=np.float64)
    if dist.size == 0:
        return dist
    rho = float(dist.min())
    gaps = np.maximum(dist - rho, 0.0)
    target = math.log2(min(max(k, 1), dist.size))
    floor = max(_MIN_K_DIST_SCALE * float(dist.mean()), float(gaps.max()) / -math.log(_MIN_MEMBERSHIP))

    lo, hi, mid = 0.0, math.inf, 1.0
    reachable = np.count_nonzero(gaps == 0.0) < target
    for _ in range(_SMOOTH_K_ITERATIONS if reachable else 0):
        psum = float(np.sum(np.exp(-gaps / mid)))
        if abs(psum - target) < _SMOOTH_K_TOLERANCE:
            break
        if psum > target:
            hi = mid
            mid = (lo + hi) / 2.0
        else:
            lo = mid
            mid = mid * 2.0 if hi == math.inf else (lo + hi) / 2.0

    sigma = max(mid if reachable else 0.0, floor)
    if sigma <= 0.0:
        return np.where(gaps > 0.0, 0.0, 1.0)
    return np.exp(-gaps / sigma)


class NeighborGraph:
    """Directed kNN lists plus the reverse references needed for incremental updates."""

    def __init__(self, n_neighbors: int) -> None:
        self.n_neighbors = n_neighbors
        self._lists: dict[int, list[Neighbor]] = {}
        self._referrers: dict[int, set[int]] = defaultdict(set)
        self.version = 0

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._lists

    def __len__(self) -> int:
        return len(self._lists)

    def ids(self) -> list[int]:
        return sorted(self._lists)

    def neighbors(self, chunk_id: int) -> list[Neighbor]:
        return list(self._lists.get(chunk_id, ()))

    def referrers(self, chunk_id: int) -> set[int]:
        return set(self._referrers.get(chunk_id, ()))

    def set_neighbors(self, chunk_id: int, pairs: Sequence[tuple[int, float]]) -> list[Neighbor]:
        ordered = sorted(((int(i), float(d)) for i, d in pairs if i != chunk_id), key=lambda p: (p[1], p[0]))
        weights = smooth_knn_weights([d for _, d in ordered], self.n_neighbors)
        entries = [Neighbor(i, d, float(w)) for (i, d), w in zip(ordered, weights)]
        self.restore(chunk_id, entries)
        return entries

    def restore(self, chunk_id: int, entries: Sequence[Neighbor]) -> None:
        for previous in self._lists.get(chunk_id, ()):
            refs = self._referrers.get(previous.id)
            if refs is not None:
                refs.discard(chunk_id)
        self._lists[chunk_id] = list(entries)
        for entry in entries:
            self._referrers[entry.id].add(chunk_id)
        self.version += 1

    def remove(self, chunk_id: int) -> set[int]:
        """Drop a point and strip it from every list that referenced it.

        Returns the ids whose lists lost an entry; callers refill them.
        """

        self.restore(chunk_id, [])
        del self._lists[chunk_id]
        referrers = self._referrers.pop(chunk_id, set())
        for ref in referrers:
            remaining = [(n.id, n.distance) for n in self._lists.get(ref, ()) if n.id != chunk_id]
            self.set_neighbors(ref, remaining)
        self.version += 1
        return referrers

    def directed_weight(self, source: int, target: int) -> float:
        for entry in self._lists.get(source, ()):
            if entry.id == target:
                return entry.weight
        return 0.0

    def symmetric_weight(self, a: int, b: int) -> float:
        w1 = self.directed_weight(a, b)
        w2 = self.directed_weight(b, a)
        return w1 + w2 - w1 * w2

    def edges(self, touching: Iterable[int] | None = None) -> list[tuple[int, int, float]]:
        """Unique symmetrised edges `(i, j, w)` with `i < j`.

        With `touching`, only edges with at least one endpoint in that set.
        """

        if touching is None:
            sources: Iterable[int] = self._lists.keys()
        else:
            focus = set(touching)
            sources = set()
            for chunk_id in focus:
                if chunk_id in self._lists:
                    sources.add(chunk_id)
                    sources.update(self._referrers.get(chunk_id, ()))

        directed: dict[tuple[int, int], list[float]] = {}
        for source in sources:
            for entry in self._lists.get(source, ()):
                if entry.id not in self._lists:
                    continue
                if touching is not None and source not in focus and entry.id not in focus:
                    continue
                key = (min(source, entry.id), max(source, entry.id))
                directed.setdefault(key, [0.0, 0.0])[0 if source == key[0] else 1] = entry.weight

        edges = []
        for (i, j), (w1, w2) in sorted(directed.items()):
            weight = w1 + w2 - w1 * w2
            if weight > 0.0:
                edges.append((i, j, weight))
        return edges

    def adjacency(self, ids: Sequence[int]):
        """Symmetric sparse weight matrix over `ids` in the given order."""

        from scipy.sparse import coo_matrix

        position = {chunk_id: pos for pos, chunk_id in enumerate(ids)}
        rows: list[int] = []
        cols: list[int] = []
        vals: list[float] = []
        for i, j, weight in self.edges():
            if i in position and j in position:
                rows.extend((position[i], position[j]))
                cols.extend((position[j], position[i]))
                vals.extend((weight, weight))
        size = len(ids)
        return coo_matrix((vals, (rows, cols)), shape=(size, size)).tocsr()

    def copy(self) -> "NeighborGraph":
        clone = NeighborGraph(self.n_neighbors)
        clone._lists = {key: list(value) for key, value in self._lists.items()}
        clone._referrers = defaultdict(set, {key: set(value) for key, value in self._referrers.items()})
        clone.version = self.version
        return clone


class NeighborGraphBuilder:
    """Maintains directed kNN lists as points enter and leave the index."""

    def __init__(self, index: AdaptiveNeighborIndex, graph: NeighborGraph) -> None:
        self.index = index
        self.graph = graph

    @property
    def k(self) -> int:
        return self.graph.n_neighbors

    def build_neighbors(self, chunk_id: int, k: int | None = None) -> list[tuple[int, float]]:
        if chunk_id not in self.index.matrix:
            raise NotFound(chunk_id)
        return self.index.query(self.index.vector(chunk_id), k or self.k, exclude=chunk_id)

    def add(self, chunk_id: int, vector: np.ndarray) -> set[int]:
        self.index.add(chunk_id, vector)
        return self.link(chunk_id)

    def link(self, chunk_id: int) -> set[int]:
        """Compute the point's own list and re-rank every list it now belongs to.

        Returns the ids whose neighbour lists changed, the point included.
        """

        vector = self.index.vector(chunk_id)
        self.graph.set_neighbors(chunk_id, self.build_neighbors(chunk_id))
        changed = {chunk_id}

        candidate_ids, distances = self.index.scan(vector, exclude=chunk_id)
        for other, distance in zip(candidate_ids.tolist(), distances.tolist()):
            if other not in self.graph:
                continue
            current = self.graph.neighbors(other)
            if any(entry.id == chunk_id for entry in current):
                continue
            if len(current) >= self.k:
                worst = current[-1]
                if (distance, chunk_id) >= (worst.distance, worst.id):
                    continue
            pairs = [(entry.id, entry.distance) for entry in current] + [(chunk_id, distance)]
            pairs.sort(key=lambda p: (p[1], p[0]))
            self.graph.set_neighbors(other, pairs[: self.k])
            changed.add(other)
        return changed

    def remove(self, chunk_id: int) -> set[int]:
        if chunk_id not in self.index.matrix:
            raise NotFound(chunk_id)
        self.index.remove(chunk_id)
        if chunk_id not in self.graph:
            return set()
        referrers = self.graph.remove(chunk_id)
        for ref in referrers:
            if ref in self.index.matrix:
                self.graph.set_neighbors(ref, self.build_neighbors(ref))
        return referrers

    def rebuild(self, graph: NeighborGraph | None = None) -> NeighborGraph:
        target = graph or self.graph
        for chunk_id in self.index.matrix.ids.tolist():
            target.set_neighbors(chunk_id, self.build_neighbors(chunk_id))
        return target
