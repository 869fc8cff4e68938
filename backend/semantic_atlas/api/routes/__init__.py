"""Route exports for the API layer.

Re-exports the corpus router so callers can include all corpus endpoints with a single import.
"""

from .corpus import router as corpus_router

__all__ = ["corpus_router"]
