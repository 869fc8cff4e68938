"""Single-row corpus bookkeeping model."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import event
from sqlmodel import Field, SQLModel

CORPUS_STATE_ID = 1


class CorpusState(SQLModel, table=True):
    __tablename__ = "corpus_state"

    id: int = Field(default=CORPUS_STATE_ID, primary_key=True)
    dim: Optional[int] = None
    metric: str = Field(default="cosine")
    n_components: int = Field(default=2)
    inserts_since_settle: int = Field(default=0)
    settle_count: int = Field(default=0)
    last_settled_at: Optional[datetime] = None
    trustworthiness: Optional[float] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


@event.listens_for(CorpusState, "before_update", propagate=True)
def set_updated_at(_, __, target):
    target.updated_at = datetime.utcnow()
