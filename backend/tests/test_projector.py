import time

import numpy as np
import pytest

from conftest import make_settings
from semantic_atlas.core.errors import NotFound
from semantic_atlas.services.layout import PointState
from semantic_atlas.services.projector import IncrementalProjector
from semantic_atlas.services.vector_store import StoredChunk, VectorStore

CLUSTER_A = {1: [1.0, 0.0, 0.02], 2: [0.98, 0.05, 0.0], 3: [0.97, 0.0, 0.06]}
CLUSTER_B = {4: [0.0, 0.02, 1.0], 5: [0.05, 0.0, 0.98], 6: [0.0, 0.06, 0.97]}


def _seeded_projector(**overrides) -> IncrementalProjector:
    projector = IncrementalProjector.from_settings(None, make_settings(**overrides))
    for cluster, x in ((CLUSTER_A, -5.0), (CLUSTER_B, 5.0)):
        for offset, (chunk_id, vector) in enumerate(cluster.items()):
            projector.builder.add(chunk_id, vector)
            projector.layout.place(chunk_id, [x, float(offset)])
            projector.layout.mark(chunk_id, PointState.LOCALLY_PLACED)
    return projector


@pytest.mark.asyncio
async def test_insert_persists_then_places_first_point_at_origin(session_factory):
    projector = IncrementalProjector.from_settings(VectorStore(session_factory), make_settings())
    chunk = StoredChunk(source="a.txt", chunk_index=0, text="alpha", vector=np.array([1.0, 0.0, 0.0], dtype=np.float32))

    result = await projector.insert(chunk)

    assert result.chunk_id == chunk.id == 1
    assert result.position.tolist() == [0.0, 0.0]
    assert projector.layout.states[1] is PointState.LOCALLY_PLACED
    assert await projector.store.count() == 1


def test_new_point_lands_beside_its_neighbours():
    projector = _seeded_projector()
    result = projector.place(7, [0.95, 0.05, 0.01])

    assert {entry.id for entry in projector.graph.neighbors(7)} <= set(CLUSTER_A)
    assert projector.layout.states[7] is PointState.LOCALLY_PLACED
    a_centre = projector.layout.matrix(list(CLUSTER_A)).mean(axis=0)
    b_centre = projector.layout.matrix(list(CLUSTER_B)).mean(axis=0)
    assert np.linalg.norm(result.position - a_centre) < np.linalg.norm(result.position - b_centre)
    assert 7 in result.relinked
    assert 7 in result.moved
    assert result.corrupted == []


def test_settled_neighbours_stay_within_move_bound():
    projector = _seeded_projector(local_move_bound=0.25, local_epochs=40)
    for chunk_id in projector.layout.ids():
        projector.layout.settle(chunk_id)

    result = projector.place(7, [0.95, 0.05, 0.01])

    for chunk_id in result.moved - {7}:
        drift = np.linalg.norm(projector.layout.coords[chunk_id] - projector.layout.anchors[chunk_id])
        assert drift <= 0.25 + 1e-9
        assert projector.layout.states[chunk_id] is PointState.SETTLED


def test_placement_is_deterministic_for_a_seed():
    first = _seeded_projector().place(7, [0.95, 0.05, 0.01])
    second = _seeded_projector().place(7, [0.95, 0.05, 0.01])
    assert np.array_equal(first.position, second.position)


def test_unlink_removes_point_and_refills_lists():
    projector = _seeded_projector()
    changed = projector.unlink(2)

    assert 2 not in projector.layout
    assert 2 not in projector.graph
    assert changed
    for chunk_id in changed:
        assert 2 not in [entry.id for entry in projector.graph.neighbors(chunk_id)]
    with pytest.raises(NotFound):
        projector.unlink(2)


def test_approximate_index_path_places_every_point():
    projector = IncrementalProjector.from_settings(
        None,
        make_settings(approximate_threshold=50, n_neighbors=4, local_epochs=5),
    )
    rng = np.random.default_rng(21)
    centres = rng.normal(scale=4.0, size=(5, 8))
    for chunk_id in range(1, 301):
        projector.place(chunk_id, centres[chunk_id % 5] + rng.normal(size=8))

    assert projector.index.method == "lsh"
    assert len(projector.layout) == 300
    assert set(projector.layout.states.values()) == {PointState.LOCALLY_PLACED}
    coords = projector.layout.matrix(projector.layout.ids())
    assert np.all(np.isfinite(coords))
    for chunk_id in projector.graph.ids():
        assert len(projector.graph.neighbors(chunk_id)) == 4


def _placement_latency(size: int, rng: np.random.Generator) -> float:
    projector = IncrementalProjector.from_settings(
        None,
        make_settings(approximate_threshold=100, n_neighbors=5, local_epochs=5, embedding_dim=16),
    )
    for chunk_id in range(size):
        projector.index.add(chunk_id, rng.normal(size=16))
    projector.builder.rebuild()
    for chunk_id in range(size):
        projector.layout.place(chunk_id, rng.normal(scale=5.0, size=2))
        projector.layout.mark(chunk_id, PointState.LOCALLY_PLACED)

    timings = []
    for chunk_id in range(size, size + 25):
        vector = rng.normal(size=16)
        started = time.perf_counter()
        projector.place(chunk_id, vector)
        timings.append(time.perf_counter() - started)
    assert projector.index.method == "lsh"
    return float(np.median(timings))


def test_local_placement_latency_does_not_grow_with_corpus_size():
    rng = np.random.default_rng(5)
    small = _placement_latency(200, rng)
    large = _placement_latency(2000, rng)
    assert large < 3.0 * small + 0.005
