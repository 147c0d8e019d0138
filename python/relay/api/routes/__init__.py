"""API route definitions.

Uses a factory pattern to avoid import-time settings loading.
This allows tests to import modules without requiring all environment
variables to be configured upfront.
"""

from fastapi import APIRouter

from relay.api.routes.health import router as health_router
from relay.api.routes.internal import router as internal_router
from relay.api.routes.messages import router as messages_router


def create_api_router() -> APIRouter:
    """Create and configure the API router."""
    api_router = APIRouter()
    api_router.include_router(health_router, tags=["health"])
    api_router.include_router(messages_router, tags=["messages"])
    api_router.include_router(internal_router, tags=["internal"])
    return api_router


__all__ = ["create_api_router"]
