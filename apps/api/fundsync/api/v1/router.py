"""
Main API Router Aggregator

Collects all v1 endpoint routers and mounts them
under a common prefix.
"""

from fastapi import APIRouter

from fundsync.api.v1.ingestion import router as ingestion_router

# Main v1 router
api_router = APIRouter()

api_router.include_router(
    ingestion_router,
    prefix="/ingestion",
    tags=["Ingestion"],
)
