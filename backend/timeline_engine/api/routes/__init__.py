"""Route exports for the API layer.

Re-exports each router so callers can include all endpoints with a single import.
"""

from .embeddings import router as embeddings_router
from .events import router as events_router
from .timeline import router as timeline_router

__all__ = ["embeddings_router", "events_router", "timeline_router"]
