import numpy as np
import pytest

from semantic_atlas.services.layout import LayoutOptimizer, LayoutState, PointState, fit_ab
from semantic_atlas.services.neighbors import AdaptiveNeighborIndex, NeighborGraph, NeighborGraphBuilder


def _graph(count: int, k: int = 3, seed: int = 5) -> NeighborGraph:
    rng = np.random.default_rng(seed)
    builder = NeighborGraphBuilder(AdaptiveNeighborIndex("euclidean"), NeighborGraph(k))
    centres = np.array([[0.0, 0.0, 0.0], [5.0, 5.0, 5.0]])
    for chunk_id in range(1, count + 1):
        builder.add(chunk_id, centres[chunk_id % 2] + rng.normal(scale=0.3, size=3))
    return builder.graph


def test_fit_ab_matches_reference_curve():
    a, b = fit_ab(1.0, 0.1)
    assert a == pytest.approx(1.577, rel=0.02)
    assert b == pytest.approx(0.895, rel=0.02)


def test_point_state_only_moves_forward():
    layout = LayoutState(n_components=2)
    layout.place(1, [0.0, 0.0])
    assert layout.states[1] is PointState.INGESTED
    layout.settle(1)
    assert layout.mark(1, PointState.LOCALLY_PLACED) is PointState.SETTLED
    assert layout.anchors[1].tolist() == [0.0, 0.0]


def test_optimizer_rejects_unsupported_dimensionality():
    with pytest.raises(ValueError):
        LayoutOptimizer(n_components=4)


def test_single_point_sits_at_origin():
    graph = NeighborGraph(3)
    graph.set_neighbors(1, [])
    layout = LayoutState(n_components=2)
    result = LayoutOptimizer().optimize(layout, graph, 10)
    assert result.coords[1].tolist() == [0.0, 0.0]
    assert result.epochs == 0


def test_spectral_initialisation_is_scaled_to_radius():
    graph = _graph(12)
    layout = LayoutState(n_components=2)
    optimizer = LayoutOptimizer(layout_radius=10.0)
    result = optimizer.optimize(layout, graph, 0)
    stacked = np.vstack(list(result.coords.values()))
    assert stacked.shape == (12, 2)
    assert float(np.max(np.abs(stacked))) == pytest.approx(10.0)


def test_optimize_does_not_touch_existing_coordinates():
    graph = _graph(10)
    layout = LayoutState(n_components=2)
    optimizer = LayoutOptimizer()
    first = optimizer.optimize(layout, graph, 0)
    for chunk_id, coords in first.coords.items():
        layout.coords[chunk_id] = coords
    snapshot = layout.copy()

    result = optimizer.optimize(layout, graph, 25)

    for chunk_id in layout.ids():
        assert np.array_equal(layout.coords[chunk_id], snapshot.coords[chunk_id])
    assert set(result.coords) == set(layout.ids())
    assert result.epochs == 25


def test_same_seed_gives_identical_layouts():
    graph = _graph(16)
    runs = []
    for _ in range(2):
        layout = LayoutState(n_components=2)
        runs.append(LayoutOptimizer(seed=9).optimize(layout, graph, 30))
    for chunk_id, coords in runs[0].coords.items():
        assert np.array_equal(coords, runs[1].coords[chunk_id])


def test_local_optimisation_only_returns_movable_points():
    graph = _graph(10)
    layout = LayoutState(n_components=3)
    optimizer = LayoutOptimizer(n_components=3)
    for chunk_id, coords in optimizer.optimize(layout, graph, 0).coords.items():
        layout.coords[chunk_id] = coords

    movable = {1, 3}
    result = optimizer.optimize(
        layout,
        graph,
        15,
        movable=movable,
        edges=graph.edges(touching=movable),
        negative_pool=[5, 7, 9],
        seed=1,
    )
    assert set(result.coords) == movable
    assert all(coords.shape == (3,) for coords in result.coords.values())


def test_diverging_point_is_isolated_and_reported():
    graph = _graph(8)
    layout = LayoutState(n_components=2)
    optimizer = LayoutOptimizer(max_coordinate=1.0e4)
    for chunk_id, coords in optimizer.optimize(layout, graph, 0).coords.items():
        layout.coords[chunk_id] = coords
    layout.coords[4] = np.array([1.0e6, 0.0])

    result = optimizer.optimize(layout, graph, 20)

    assert result.corrupted == [4]
    for chunk_id, coords in result.coords.items():
        if chunk_id == 4:
            continue
        assert np.all(np.isfinite(coords))
        assert np.all(np.abs(coords) <= 1.0e4)
