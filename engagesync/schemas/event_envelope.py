"""
Canonical engagement event - the internal format for events from ANY provider.
Every webhook normalizes its payload into this format before batching.
"""
from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    OPEN = "open"
    CLICK = "click"
    BOUNCE = "bounce"
    DROPPED = "dropped"
    OTHER = "other"

    @classmethod
    def from_provider(cls, raw: Optional[str]) -> "EventType":
        """Map a provider event name onto a known type; unknown names become OTHER."""
        try:
            return cls(str(raw or "").strip().lower())
        except ValueError:
            return cls.OTHER

    @property
    def is_bounce(self) -> bool:
        """Bounces and drops are treated identically downstream."""
        return self in (EventType.BOUNCE, EventType.DROPPED)


class CanonicalEvent(BaseModel):
    """One engagement notification. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    email: Optional[str] = None
    event_type: EventType
    occurred_at: datetime = Field(..., description="UTC occurrence time")
    url: Optional[str] = None
    reason: Optional[str] = None
    message_id: Optional[str] = Field(default=None, description="Provider message id (sg_message_id)")
    event_id: Optional[str] = Field(default=None, description="Provider event id (sg_event_id)")
