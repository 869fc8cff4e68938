import asyncio

import numpy as np
import pytest
from sqlalchemy.exc import OperationalError

from conftest import FakeEmbedder, make_settings
from semantic_atlas.core.errors import NotFound
from semantic_atlas.schemas import SearchMethod
from semantic_atlas.services.corpus import Corpus
from semantic_atlas.services.layout import PointState

DOCUMENT = "alpha\n\nbeta\n\ngamma\n\ndelta"


@pytest.fixture()
def embedder() -> FakeEmbedder:
    return FakeEmbedder(
        {
            "alpha": [1.0, 0.0, 0.0],
            "beta": [0.9, 0.1, 0.0],
            "gamma": [0.0, 0.0, 1.0],
            "delta": [0.1, 0.0, 0.9],
            "wide": [1.0, 0.0, 0.0, 0.0],
        }
    )


@pytest.mark.asyncio
async def test_ingest_reports_inserted_unchanged_and_updated(corpus: Corpus):
    first = await corpus.ingest("doc.txt", DOCUMENT)
    assert (first.chunks, first.inserted, first.failed, first.total_rows) == (4, 4, 0, 4)

    again = await corpus.ingest("doc.txt", DOCUMENT)
    assert (again.inserted, again.unchanged, again.updated) == (0, 4, 0)

    beta_id = await corpus.store.find_id("doc.txt", 1)
    edited = await corpus.ingest("doc.txt", "alpha\n\nbeta revised\n\ngamma\n\ndelta")
    assert (edited.inserted, edited.unchanged, edited.updated) == (0, 3, 1)
    assert edited.total_rows == 4
    assert await corpus.store.find_id("doc.txt", 1) == beta_id

    resource = await corpus.chunk(beta_id)
    assert resource.text == "beta revised"
    assert resource.state == PointState.LOCALLY_PLACED.value


@pytest.mark.asyncio
async def test_failed_store_write_leaves_existing_chunk_linked(corpus: Corpus, monkeypatch):
    await corpus.ingest("doc.txt", DOCUMENT)
    beta_id = await corpus.store.find_id("doc.txt", 1)
    before = [entry.id for entry in corpus.projector.graph.neighbors(beta_id)]

    async def failing_put(chunk):
        raise OperationalError("INSERT INTO chunk", {}, Exception("disk I/O error"))

    monkeypatch.setattr(corpus.store, "put", failing_put)
    with pytest.raises(OperationalError):
        await corpus.ingest("doc.txt", "alpha\n\nbeta revised\n\ngamma\n\ndelta")

    assert beta_id in corpus.projector.graph
    assert beta_id in corpus.projector.layout
    assert beta_id in corpus.projector.index.matrix
    assert [entry.id for entry in corpus.projector.graph.neighbors(beta_id)] == before
    assert len(before) == 2
    assert corpus.projector.graph.referrers(beta_id)
    assert (await corpus.chunk(beta_id)).text == "beta"


@pytest.mark.asyncio
async def test_every_inserted_chunk_is_linked_and_placed(corpus: Corpus):
    await corpus.ingest("doc.txt", DOCUMENT)
    status = await corpus.status()
    assert status.total_chunks == 4
    assert status.dimension == 3
    assert status.states == {"ingested": 0, "locally_placed": 4, "settled": 0}
    assert status.inserts_since_settle == 4
    assert status.index_method == "brute"

    lists = await corpus.snapshots.load_graph()
    assert sorted(lists) == sorted(corpus.projector.layout.ids())
    assert all(len(entries) == 2 for entries in lists.values())


@pytest.mark.asyncio
async def test_failures_are_collected_per_chunk(corpus: Corpus, embedder: FakeEmbedder):
    embedder.fail_on.add("beta")
    report = await corpus.ingest("doc.txt", DOCUMENT)
    assert (report.inserted, report.failed) == (3, 1)
    assert report.failures[0].chunk_index == 1
    assert report.failures[0].error == "EmbeddingUnavailable"

    mismatch = await corpus.ingest("wide.txt", "wide")
    assert mismatch.failed == 1
    assert mismatch.failures[0].error == "DimensionMismatch"
    assert mismatch.total_rows == 3
    assert await corpus.store.count() == 3


@pytest.mark.asyncio
async def test_remove_keeps_graph_and_rows_consistent(corpus: Corpus):
    await corpus.ingest("doc.txt", DOCUMENT)
    beta_id = await corpus.store.find_id("doc.txt", 1)

    await corpus.remove(beta_id)

    assert len(corpus) == 3
    assert beta_id not in corpus.projector.layout
    lists = await corpus.snapshots.load_graph()
    assert beta_id not in lists
    for entries in lists.values():
        assert beta_id not in [entry.id for entry in entries]
        assert len(entries) == 2
    with pytest.raises(NotFound):
        await corpus.remove(beta_id)
    with pytest.raises(NotFound):
        await corpus.chunk(beta_id)


@pytest.mark.asyncio
async def test_reload_restores_graph_and_layout(corpus: Corpus, settings, session_factory, embedder):
    await corpus.ingest("doc.txt", DOCUMENT)

    restored = Corpus(settings, session_factory, embedder=embedder)
    await restored.load()
    try:
        assert len(restored) == 4
        assert restored.store.dimension == 3
        for chunk_id in corpus.projector.layout.ids():
            assert np.allclose(restored.projector.layout.coords[chunk_id], corpus.projector.layout.coords[chunk_id])
            assert [n.id for n in restored.projector.graph.neighbors(chunk_id)] == [
                n.id for n in corpus.projector.graph.neighbors(chunk_id)
            ]
        hits = await restored.search("gamma", k=1)
        assert hits.points[0].chunk_index == 2
    finally:
        await restored.close()


@pytest.mark.asyncio
async def test_load_places_stored_chunks_without_layout_rows(corpus: Corpus, settings, session_factory, embedder):
    await corpus.ingest("doc.txt", DOCUMENT)
    await corpus.snapshots.prune([])

    restored = Corpus(settings, session_factory, embedder=embedder)
    await restored.load()
    try:
        assert sorted(restored.projector.layout.ids()) == sorted(corpus.projector.layout.ids())
        assert all(len(restored.projector.graph.neighbors(i)) == 2 for i in restored.projector.graph.ids())
        layout = await restored.snapshots.load_layout(2)
        assert len(layout) == 4
    finally:
        await restored.close()


@pytest.mark.asyncio
async def test_global_settle_marks_points_settled(corpus: Corpus):
    await corpus.ingest("doc.txt", DOCUMENT)

    outcome = await corpus.global_settle()

    assert outcome.applied is True
    assert outcome.points == 4
    assert outcome.corrupted == []
    assert outcome.trustworthiness is not None
    status = await corpus.status()
    assert status.states["settled"] == 4
    assert status.settle_count == 1
    assert status.inserts_since_settle == 0
    assert status.last_settled_at is not None
    for chunk_id in corpus.projector.layout.ids():
        assert np.array_equal(corpus.projector.layout.anchors[chunk_id], corpus.projector.layout.coords[chunk_id])


@pytest.mark.asyncio
async def test_global_settle_on_empty_corpus_is_a_no_op(corpus: Corpus):
    outcome = await corpus.global_settle()
    assert outcome.applied is False
    assert outcome.points == 0


@pytest.mark.asyncio
async def test_reset_discards_in_flight_settle(corpus: Corpus):
    await corpus.ingest("doc.txt", DOCUMENT)

    settle = asyncio.create_task(corpus.global_settle())
    await asyncio.sleep(0)
    reset = await corpus.reset()
    outcome = await settle

    assert reset.removed_chunks == 4
    assert corpus.generation == 1
    assert outcome.applied is False
    assert len(corpus) == 0
    status = await corpus.status()
    assert status.total_chunks == 0
    assert status.settle_count == 0
    assert status.dimension is None
    assert corpus.layout_points().points == []


@pytest.mark.asyncio
async def test_settle_is_scheduled_after_enough_inserts(session_factory, embedder):
    instance = Corpus(make_settings(global_settle_every=3), session_factory, embedder=embedder)
    await instance.load()
    await instance.ingest("doc.txt", DOCUMENT)
    await instance.close()

    status = await instance.status()
    assert status.settle_count == 1
    assert status.states["settled"] == 4


@pytest.mark.asyncio
async def test_search_layout_and_pca_views(corpus: Corpus):
    await corpus.ingest("doc.txt", DOCUMENT)

    layout_view = await corpus.search("alpha", k=2)
    assert layout_view.method is SearchMethod.LAYOUT
    assert [point.chunk_index for point in layout_view.points] == [0, 1]
    assert layout_view.points[0].score == pytest.approx(1.0)
    assert layout_view.points[0].x is not None and layout_view.points[0].z is None

    pca_view = await corpus.search("alpha", k=3, dims=3, method="pca")
    assert pca_view.dims == 3
    assert all(point.z is not None for point in pca_view.points)

    with pytest.raises(ValueError):
        await corpus.search("alpha", dims=3)


@pytest.mark.asyncio
async def test_search_on_empty_corpus_returns_no_points(corpus: Corpus):
    response = await corpus.search("anything")
    assert response.points == []


@pytest.mark.asyncio
async def test_export_frame_has_one_row_per_point(corpus: Corpus):
    await corpus.ingest("doc.txt", DOCUMENT)
    frame = corpus.export_frame()
    assert list(frame.columns) == ["id", "source", "chunk_index", "state", "x", "y", "text_preview"]
    assert len(frame) == 4
    assert set(frame["text_preview"]) == {"alpha", "beta", "gamma", "delta"}
