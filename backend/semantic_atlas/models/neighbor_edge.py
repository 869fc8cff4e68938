"""Directed neighbour list rows.

Classes:
    NeighborEdge: One ranked entry of a chunk's k-nearest-neighbour list with its fuzzy weight.
"""

from __future__ import annotations

from sqlmodel import Field, SQLModel


class NeighborEdge(SQLModel, table=True):
    __tablename__ = "neighbor_edges"

    chunk_id: int = Field(primary_key=True)
    rank: int = Field(primary_key=True)
    neighbor_id: int
    distance: float
    weight: float
