"""Service layer exports.

Expose the corpus aggregate and its collaborators for easy importing.
"""

from .corpus import Corpus
from .embedding import BaseEmbedder, HashingEmbedder, OpenAIEmbedder, build_embedder
from .projector import IncrementalProjector
from .search import QueryService
from .vector_store import StoredChunk, VectorStore

__all__ = [
    "BaseEmbedder",
    "Corpus",
    "HashingEmbedder",
    "IncrementalProjector",
    "OpenAIEmbedder",
    "QueryService",
    "StoredChunk",
    "VectorStore",
    "build_embedder",
]
