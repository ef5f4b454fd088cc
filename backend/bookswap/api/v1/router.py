"""
API v1 router aggregation.

WHAT: Combine all v1 endpoint routers
WHY: Single place to register all API routes
HOW: Include routers from endpoints with prefixes
"""

from fastapi import APIRouter

from .endpoints import status, listings, conversations, users

# Create main v1 router
api_router = APIRouter()

# Include endpoint routers
api_router.include_router(
    status.router,
    prefix="/api/v1",
    tags=["status"]
)

api_router.include_router(
    listings.router,
    prefix="/api/v1",
    tags=["listings"]
)

api_router.include_router(
    conversations.router,
    prefix="/api/v1",
    tags=["conversations"]
)

api_router.include_router(
    users.router,
    prefix="/api/v1",
    tags=["users"]
)
