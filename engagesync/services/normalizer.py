"""
Event normalizer - maps raw SendGrid Event Webhook records onto CanonicalEvent.

Field renaming and defaulting only. Email format and timestamp ranges are not
validated here; bad values flow through and surface later as reconciliation
no-ops or remote-side errors.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from engagesync.schemas.event_envelope import CanonicalEvent, EventType

logger = logging.getLogger(__name__)


class InvalidPayload(ValueError):
    """The ingress body is not a sequence of event records."""


def _optional_str(value: Any) -> Optional[str]:
    """Empty strings and None both mean 'absent'."""
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _safe_event_timestamp(raw_ts) -> datetime:
    """Parse epoch-seconds timestamp safely, falling back to current UTC time."""
    try:
        if raw_ts is None:
            raise ValueError("missing")
        return datetime.fromtimestamp(float(raw_ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.debug("Unparseable event timestamp %r, using current time", raw_ts)
        return datetime.now(timezone.utc)


def normalize_event(raw: dict) -> CanonicalEvent:
    """Convert one provider event record into a CanonicalEvent."""
    return CanonicalEvent(
        email=_optional_str(raw.get("email")),
        event_type=EventType.from_provider(raw.get("event")),
        occurred_at=_safe_event_timestamp(raw.get("timestamp")),
        url=_optional_str(raw.get("url")),
        reason=_optional_str(raw.get("reason")),
        message_id=_optional_str(raw.get("sg_message_id")),
        event_id=_optional_str(raw.get("sg_event_id")),
    )


def normalize_payload(body: Any) -> list[CanonicalEvent]:
    """
    Normalize a whole webhook body.
    Raises InvalidPayload unless the body is a list of objects; nothing is
    normalized when any item is rejected.
    """
    if not isinstance(body, list):
        raise InvalidPayload("Expected a JSON array of events")

    for index, item in enumerate(body):
        if not isinstance(item, dict):
            raise InvalidPayload(f"Event at index {index} is not an object")

    return [normalize_event(item) for item in body]
