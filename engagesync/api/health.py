"""
Health check endpoint - used by load balancers and the platform router.

- GET /health - basic liveness (always 200 with a fixed body if the app is running)
"""
from fastapi import APIRouter

from engagesync.schemas.api_responses import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Basic liveness check. Independent of batch or CRM state."""
    return HealthResponse()
