"""Convenience exports for ORM models.

Surface the SQLModel tables so calling code can import them from a single module.
"""

from .chunk import Chunk
from .corpus_state import CORPUS_STATE_ID, CorpusState
from .layout_point import LayoutPoint
from .neighbor_edge import NeighborEdge

__all__ = [
    "Chunk",
    "CorpusState",
    "CORPUS_STATE_ID",
    "LayoutPoint",
    "NeighborEdge",
]
