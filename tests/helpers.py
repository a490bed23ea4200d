"""
Shared test builders: canonical events and a mock CRM.
"""
import re
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from engagesync.integrations.crm_base import CRMBase, RecordResult
from engagesync.schemas.event_envelope import CanonicalEvent, EventType

BASE_TIME = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def at(seconds: int) -> datetime:
    """BASE_TIME + seconds."""
    return BASE_TIME + timedelta(seconds=seconds)


def make_event(
    event_type: EventType | str = EventType.OPEN,
    email: str | None = "jane@example.com",
    seconds: int = 0,
    url: str | None = None,
    reason: str | None = None,
    message_id: str | None = None,
    event_id: str | None = None,
) -> CanonicalEvent:
    """Build a CanonicalEvent occurring BASE_TIME + seconds."""
    return CanonicalEvent(
        email=email,
        event_type=EventType(event_type),
        occurred_at=at(seconds),
        url=url,
        reason=reason,
        message_id=message_id,
        event_id=event_id,
    )


def make_crm(records: dict[str, list[dict]] | None = None) -> MagicMock:
    """
    Mock CRM whose query() returns copies of records[<sobject after FROM>]
    and whose update() reports every record as successful.
    """
    records = records or {}
    crm = MagicMock(spec=CRMBase)

    async def _query(soql: str) -> list[dict]:
        sobject = re.search(r"\bFROM\s+(\w+)", soql).group(1)
        return [dict(r) for r in records.get(sobject, [])]

    async def _update(sobject: str, updates: list[dict]) -> list[RecordResult]:
        return [RecordResult(record_id=u["Id"], success=True) for u in updates]

    crm.login = AsyncMock()
    crm.query = AsyncMock(side_effect=_query)
    crm.update = AsyncMock(side_effect=_update)
    return crm


def updates_for(crm: MagicMock, sobject: str) -> list[dict]:
    """All records passed to crm.update for one object type."""
    sent = []
    for call in crm.update.call_args_list:
        if call.args[0] == sobject:
            sent.extend(call.args[1])
    return sent


def queries_for(crm: MagicMock, sobject: str) -> list[str]:
    return [c.args[0] for c in crm.query.call_args_list if f"FROM {sobject} " in c.args[0]]

