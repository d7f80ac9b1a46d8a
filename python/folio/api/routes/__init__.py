"""API route definitions.

Uses a factory pattern to avoid import-time settings loading.
This allows tests to import modules without requiring all environment
variables to be configured upfront.
"""

from fastapi import APIRouter

from folio.api.routes.chapters import router as chapters_router
from folio.api.routes.drafts import router as drafts_router
from folio.api.routes.health import router as health_router
from folio.api.routes.jobs import router as jobs_router


def create_api_router() -> APIRouter:
    """Create and configure the API router.

    Returns:
        Configured APIRouter with all routes registered.
    """
    api_router = APIRouter()
    api_router.include_router(health_router, tags=["health"])
    api_router.include_router(drafts_router, tags=["drafts"])
    api_router.include_router(chapters_router, tags=["chapters"])
    api_router.include_router(jobs_router, tags=["jobs"])
    return api_router


__all__ = ["create_api_router"]
