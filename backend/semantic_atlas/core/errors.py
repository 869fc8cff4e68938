"""Domain exceptions raised by the corpus engine.

Services raise these; the API layer maps them to HTTP status codes.
"""

from __future__ import annotations

from typing import Sequence


class CorpusError(Exception):
    """Base class for corpus engine failures."""


class DimensionMismatch(CorpusError, ValueError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Embedding dimensionality {actual} does not match corpus dimensionality {expected}")
        self.expected = expected
        self.actual = actual


class NotFound(CorpusError, LookupError):
    def __init__(self, chunk_id: int) -> None:
        super().__init__(f"Chunk {chunk_id} not found")
        self.chunk_id = chunk_id


class EmbeddingUnavailable(CorpusError, RuntimeError):
    """The embedding collaborator could not produce a vector."""


class OptimizationDiverged(CorpusError, ArithmeticError):
    """Layout rows left the finite, bounded region during an epoch."""

    def __init__(self, rows: Sequence[int]) -> None:
        super().__init__(f"Layout diverged for {len(rows)} point(s)")
        self.rows = list(rows)


class LayoutCorruption(CorpusError, RuntimeError):
    def __init__(self, chunk_id: int) -> None:
        super().__init__(f"Layout for chunk {chunk_id} diverged twice and was reset")
        self.chunk_id = chunk_id
