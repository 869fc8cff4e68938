"""Layout coordinates persisted per chunk.

Classes:
    LayoutPoint: Current and anchor coordinates of a chunk plus its placement state.

Functions:
    set_updated_at(_, __, target): SQLAlchemy event hook that maintains the `updated_at` timestamp.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import event
from sqlmodel import Field, SQLModel


class LayoutPoint(SQLModel, table=True):
    __tablename__ = "layout_points"

    chunk_id: int = Field(primary_key=True)
    x: float
    y: float
    z: Optional[float] = None
    anchor_x: Optional[float] = None
    anchor_y: Optional[float] = None
    anchor_z: Optional[float] = None
    state: str = Field(default="ingested")
    updated_at: datetime = Field(default_factory=datetime.utcnow)


@event.listens_for(LayoutPoint, "before_update", propagate=True)
def set_updated_at(_, __, target):
    target.updated_at = datetime.utcnow()
