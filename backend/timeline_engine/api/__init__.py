"""API router composition for the engine.

The module assembles individual route groups into a single `api_router` that can be mounted on the app.
"""

from fastapi import APIRouter

from timeline_engine.api.routes import embeddings_router, events_router, timeline_router

api_router = APIRouter()
api_router.include_router(embeddings_router)
api_router.include_router(events_router)
api_router.include_router(timeline_router)

__all__ = ["api_router"]
