"""
API routers.
"""

from fastapi import APIRouter
from . import auth, oauth

# Create main API router
api_router = APIRouter()

api_router.include_router(
    auth.router,
    prefix="/api/auth",
    tags=["Authentication"]
)

# Browser redirects; kept outside /api so provider callback URLs stay short
api_router.include_router(
    oauth.router,
    prefix="/auth",
    tags=["Identity Providers"]
)

# Export the combined router
__all__ = ["api_router"]
