"""
API response schemas for the ingress and health endpoints.
"""
from pydantic import BaseModel


class WebhookAckResponse(BaseModel):
    """Standard webhook acknowledgement. Reconciliation happens later."""
    status: str = "accepted"
    received: int = 0
    queued: int = 0


class HealthResponse(BaseModel):
    status: str = "healthy"
    service: str = "engagesync"
    version: str = "1.0.0"
