"""Persistence of the neighbour graph, layout rows and corpus bookkeeping.

Classes:
    SnapshotStore: Async reads and writes for `neighbor_edges`, `layout_points` and `corpus_state`.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

import numpy as np
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from semantic_atlas.models import CORPUS_STATE_ID, CorpusState, LayoutPoint, NeighborEdge
from semantic_atlas.services.layout import LayoutState, PointState
from semantic_atlas.services.neighbors import Neighbor

_LOGGER = logging.getLogger(__name__)


def _point_row(chunk_id: int, layout: LayoutState) -> dict[str, Any]:
    coords = layout.coords[chunk_id]
    anchor = layout.anchors.get(chunk_id)
    state = layout.states.get(chunk_id, PointState.INGESTED)
    return {
        "chunk_id": chunk_id,
        "x": float(coords[0]),
        "y": float(coords[1]),
        "z": float(coords[2]) if coords.shape[0] > 2 else None,
        "anchor_x": float(anchor[0]) if anchor is not None else None,
        "anchor_y": float(anchor[1]) if anchor is not None else None,
        "anchor_z": float(anchor[2]) if anchor is not None and anchor.shape[0] > 2 else None,
        "state": state.value,
    }


class SnapshotStore:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def load_state(self) -> CorpusState:
        async with self._session_factory() as session:
            state = await session.get(CorpusState, CORPUS_STATE_ID)
            if state is None:
                state = CorpusState(id=CORPUS_STATE_ID)
                session.add(state)
                await session.commit()
                await session.refresh(state)
            return state

    async def update_state(self, **fields: Any) -> CorpusState:
        async with self._session_factory() as session:
            state = await session.get(CorpusState, CORPUS_STATE_ID)
            if state is None:
                state = CorpusState(id=CORPUS_STATE_ID)
            for key, value in fields.items():
                setattr(state, key, value)
            session.add(state)
            await session.commit()
            await session.refresh(state)
            return state

    async def load_graph(self) -> dict[int, list[Neighbor]]:
        async with self._session_factory() as session:
            result = await session.exec(select(NeighborEdge).order_by(NeighborEdge.chunk_id, NeighborEdge.rank))
            lists: dict[int, list[Neighbor]] = {}
            for row in result.all():
                lists.setdefault(row.chunk_id, []).append(Neighbor(row.neighbor_id, row.distance, row.weight))
            return lists

    async def load_layout(self, n_components: int) -> LayoutState:
        layout = LayoutState(n_components=n_components)
        async with self._session_factory() as session:
            result = await session.exec(select(LayoutPoint))
            for row in result.all():
                values = [row.x, row.y, row.z if row.z is not None else 0.0][:n_components]
                layout.coords[row.chunk_id] = np.asarray(values, dtype=np.float64)
                layout.states[row.chunk_id] = PointState(row.state)
                if row.anchor_x is not None and row.anchor_y is not None:
                    anchor = [row.anchor_x, row.anchor_y, row.anchor_z if row.anchor_z is not None else 0.0]
                    layout.anchors[row.chunk_id] = np.asarray(anchor[:n_components], dtype=np.float64)
        return layout

    async def write_neighbors(self, lists: Mapping[int, Sequence[Neighbor]]) -> None:
        if not lists:
            return
        async with self._session_factory() as session:
            await session.execute(delete(NeighborEdge).where(NeighborEdge.chunk_id.in_(list(lists))))
            session.add_all(
                NeighborEdge(
                    chunk_id=chunk_id,
                    rank=rank,
                    neighbor_id=entry.id,
                    distance=float(entry.distance),
                    weight=float(entry.weight),
                )
                for chunk_id, entries in lists.items()
                for rank, entry in enumerate(entries)
            )
            await session.commit()

    async def write_layout(self, layout: LayoutState, chunk_ids: Iterable[int]) -> None:
        ids = [chunk_id for chunk_id in chunk_ids if chunk_id in layout]
        if not ids:
            return
        async with self._session_factory() as session:
            result = await session.exec(select(LayoutPoint).where(LayoutPoint.chunk_id.in_(ids)))
            existing = {row.chunk_id: row for row in result.all()}
            for chunk_id in ids:
                values = _point_row(chunk_id, layout)
                row = existing.get(chunk_id)
                if row is None:
                    session.add(LayoutPoint(**values))
                    continue
                for key, value in values.items():
                    setattr(row, key, value)
                session.add(row)
            await session.commit()

    async def delete_chunk(self, chunk_id: int) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(NeighborEdge).where(NeighborEdge.chunk_id == chunk_id))
            await session.execute(delete(LayoutPoint).where(LayoutPoint.chunk_id == chunk_id))
            await session.commit()

    async def prune(self, valid_ids: Iterable[int]) -> int:
        """Drop graph and layout rows that reference chunks no longer stored."""

        keep = list(valid_ids)
        async with self._session_factory() as session:
            edges = await session.execute(
                delete(NeighborEdge).where(
                    NeighborEdge.chunk_id.not_in(keep) | NeighborEdge.neighbor_id.not_in(keep)
                )
            )
            points = await session.execute(delete(LayoutPoint).where(LayoutPoint.chunk_id.not_in(keep)))
            await session.commit()
        removed = (edges.rowcount or 0) + (points.rowcount or 0)
        if removed:
            _LOGGER.warning("Pruned %d dangling graph/layout rows", removed)
        return removed

    async def clear(self) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(NeighborEdge))
            await session.execute(delete(LayoutPoint))
            state = await session.get(CorpusState, CORPUS_STATE_ID)
            if state is not None:
                state.inserts_since_settle = 0
                state.settle_count = 0
                state.last_settled_at = None
                state.trustworthiness = None
                session.add(state)
            await session.commit()

    async def record_settle(self, *, inserts_since_settle: int, trustworthiness: float | None) -> CorpusState:
        state = await self.load_state()
        return await self.update_state(
            inserts_since_settle=inserts_since_settle,
            settle_count=state.settle_count + 1,
            last_settled_at=datetime.utcnow(),
            trustworthiness=trustworthiness,
        )
