"""
Batch aggregation - folds a flushed batch into two batch-scoped views:

- per message id: every open, click and bounce for that message, used for
  EmailMessage records
- per email address: counters plus most-recent timestamps, used for the
  person-level records (Lead / Contact / Account)

"Most recent" always means strictly greater: on equal timestamps the value
seen first is kept.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from engagesync.schemas.event_envelope import CanonicalEvent, EventType


def _is_newer(candidate: datetime, current: Optional[datetime]) -> bool:
    return current is None or candidate > current


@dataclass(frozen=True)
class Click:
    occurred_at: datetime
    url: Optional[str] = None


@dataclass(frozen=True)
class Bounce:
    occurred_at: datetime
    reason: Optional[str] = None


@dataclass
class MessageAggregate:
    """Engagement for one provider message id within one batch."""
    message_id: str
    email: Optional[str] = None
    opens: list[datetime] = field(default_factory=list)
    clicks: list[Click] = field(default_factory=list)
    bounces: list[Bounce] = field(default_factory=list)

    @property
    def first_open(self) -> Optional[datetime]:
        return min(self.opens) if self.opens else None

    @property
    def last_click(self) -> Optional[Click]:
        latest: Optional[Click] = None
        for click in self.clicks:
            if latest is None or click.occurred_at > latest.occurred_at:
                latest = click
        return latest

    @property
    def latest_bounce(self) -> Optional[Bounce]:
        latest: Optional[Bounce] = None
        for bounce in self.bounces:
            if latest is None or bounce.occurred_at > latest.occurred_at:
                latest = bounce
        return latest

    @property
    def clicked_urls(self) -> list[str]:
        """Distinct clicked URLs in first-click order."""
        urls: list[str] = []
        for click in self.clicks:
            if click.url and click.url not in urls:
                urls.append(click.url)
        return urls


@dataclass
class EmailAggregate:
    """Engagement for one email address within one batch."""
    email: str
    total_opens: int = 0
    total_clicks: int = 0
    last_open_at: Optional[datetime] = None
    last_click_at: Optional[datetime] = None
    last_click_url: Optional[str] = None
    last_bounce_at: Optional[datetime] = None
    bounce_reason: Optional[str] = None

    def record_open(self, occurred_at: datetime) -> None:
        self.total_opens += 1
        if _is_newer(occurred_at, self.last_open_at):
            self.last_open_at = occurred_at

    def record_click(self, occurred_at: datetime, url: Optional[str]) -> None:
        self.total_clicks += 1
        if _is_newer(occurred_at, self.last_click_at):
            self.last_click_at = occurred_at
            self.last_click_url = url

    def record_bounce(self, occurred_at: datetime, reason: Optional[str]) -> None:
        if _is_newer(occurred_at, self.last_bounce_at):
            self.last_bounce_at = occurred_at
            self.bounce_reason = reason

    def merge(self, other: "EmailAggregate") -> None:
        """Fold another aggregate into this one (rollups, case-variant emails)."""
        self.total_opens += other.total_opens
        self.total_clicks += other.total_clicks
        if other.last_open_at and _is_newer(other.last_open_at, self.last_open_at):
            self.last_open_at = other.last_open_at
        if other.last_click_at and _is_newer(other.last_click_at, self.last_click_at):
            self.last_click_at = other.last_click_at
            self.last_click_url = other.last_click_url
        if other.last_bounce_at and _is_newer(other.last_bounce_at, self.last_bounce_at):
            self.last_bounce_at = other.last_bounce_at
            self.bounce_reason = other.bounce_reason

    @classmethod
    def combine(cls, key: str, aggregates: Iterable["EmailAggregate"]) -> "EmailAggregate":
        combined = cls(email=key)
        for aggregate in aggregates:
            combined.merge(aggregate)
        return combined


@dataclass
class BatchAggregates:
    by_message_id: dict[str, MessageAggregate] = field(default_factory=dict)
    by_email: dict[str, EmailAggregate] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.by_message_id and not self.by_email


def aggregate_batch(events: Iterable[CanonicalEvent]) -> BatchAggregates:
    """Fold events (in insertion order) into per-message and per-email views."""
    result = BatchAggregates()

    for event in events:
        if event.event_type == EventType.OTHER:
            continue

        if event.message_id:
            message = result.by_message_id.get(event.message_id)
            if message is None:
                message = MessageAggregate(message_id=event.message_id, email=event.email)
                result.by_message_id[event.message_id] = message

            if event.event_type == EventType.OPEN:
                message.opens.append(event.occurred_at)
            elif event.event_type == EventType.CLICK:
                message.clicks.append(Click(event.occurred_at, event.url))
            elif event.event_type.is_bounce:
                message.bounces.append(Bounce(event.occurred_at, event.reason))

        if event.email:
            person = result.by_email.get(event.email)
            if person is None:
                person = EmailAggregate(email=event.email)
                result.by_email[event.email] = person

            if event.event_type == EventType.OPEN:
                person.record_open(event.occurred_at)
            elif event.event_type == EventType.CLICK:
                person.record_click(event.occurred_at, event.url)
            elif event.event_type.is_bounce:
                person.record_bounce(event.occurred_at, event.reason)

    return result
