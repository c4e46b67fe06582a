"""API endpoints module."""

from fastapi import APIRouter

from calsync.api.google import router as google_router
from calsync.api.sources import router as sources_router
from calsync.api.sync import router as sync_router

api_router = APIRouter(prefix="/api")

api_router.include_router(sources_router)
api_router.include_router(google_router)
api_router.include_router(sync_router)

__all__ = ["api_router"]
