"""Nearest-chunk retrieval against the live corpus.

Classes:
    SearchHit: One ranked chunk with its score and current layout coordinates.
    QueryService: Scores chunks against a query embedding or a free-text query.

Functions:
    pca_coordinates(vectors, dims): On-the-fly PCA projection of a result set.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np
from sklearn.decomposition import PCA

from semantic_atlas.core.errors import DimensionMismatch
from semantic_atlas.services.embedding import BaseEmbedder
from semantic_atlas.services.projector import IncrementalProjector


@dataclass(slots=True)
class SearchHit:
    chunk_id: int
    score: float
    distance: float
    coordinates: Optional[tuple[float, ...]] = None
    state: Optional[str] = None


def pca_coordinates(vectors: np.ndarray, dims: int) -> np.ndarray:
    """Project rows to `dims` principal components, padding with zeros when degenerate."""

    count = vectors.shape[0]
    output = np.zeros((count, dims), dtype=np.float64)
    if count < 2:
        return output
    components = min(dims, count, vectors.shape[1])
    centred = vectors - vectors.mean(axis=0)
    if not np.any(centred):
        return output
    output[:, :components] = PCA(n_components=components, svd_solver="full").fit_transform(centred)
    return output


class QueryService:
    def __init__(self, projector: IncrementalProjector, embedder: BaseEmbedder) -> None:
        self._projector = projector
        self._embedder = embedder

    @property
    def projector(self) -> IncrementalProjector:
        return self._projector

    @projector.setter
    def projector(self, value: IncrementalProjector) -> None:
        self._projector = value

    def search(self, query_embedding: np.ndarray, top_n: int) -> list[SearchHit]:
        """Rank chunks by `exp(-distance)`; runs without awaiting so reads are consistent."""

        index = self._projector.index
        layout = self._projector.layout
        if len(index) == 0 or top_n <= 0:
            return []
        vector = np.asarray(query_embedding, dtype=np.float32).astype(np.float64).reshape(-1)
        if index.matrix.dim is not None and vector.shape[0] != index.matrix.dim:
            raise DimensionMismatch(index.matrix.dim, int(vector.shape[0]))

        hits = []
        for chunk_id, distance in index.query(vector, top_n):
            coords = layout.coords.get(chunk_id)
            state = layout.states.get(chunk_id)
            hits.append(
                SearchHit(
                    chunk_id=chunk_id,
                    score=math.exp(-distance),
                    distance=distance,
                    coordinates=tuple(float(c) for c in coords) if coords is not None else None,
                    state=state.value if state is not None else None,
                )
            )
        hits.sort(key=lambda hit: (-hit.score, hit.chunk_id))
        return hits

    async def search_text(self, text: str, top_n: int) -> list[SearchHit]:
        vector = await self._embedder.embed(text)
        return self.search(vector, top_n)
