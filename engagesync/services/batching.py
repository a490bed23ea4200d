"""
In-memory batch accumulator for canonical events.

One open batch per accumulator. A batch is flushed when it reaches the size
threshold, or when the timeout elapses after the first append since the last
flush, whichever comes first. Flushing detaches the open batch and hands it to
the flush handler as a separate asyncio task, so new events keep accumulating
while the previous batch is being reconciled.

Runs on a single asyncio loop: append() and the detach-and-reset inside
flush() contain no await points, so they never interleave with each other.
Buffered events are not persisted and are lost on crash.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional

from engagesync.schemas.event_envelope import CanonicalEvent

logger = logging.getLogger(__name__)

DEFAULT_SIZE_THRESHOLD = 100
DEFAULT_TIMEOUT_SECONDS = 60.0


@dataclass(frozen=True)
class Batch:
    """A detached, ordered group of events handed to the flush handler."""
    events: list[CanonicalEvent]
    batch_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __len__(self) -> int:
        return len(self.events)


FlushHandler = Callable[[Batch], Awaitable[None]]


class BatchAccumulator:
    """Size/timeout-bounded event buffer with a cancellable flush timer."""

    def __init__(
        self,
        on_flush: FlushHandler,
        size_threshold: int = DEFAULT_SIZE_THRESHOLD,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        if size_threshold < 1:
            raise ValueError("size_threshold must be at least 1")
        self._on_flush = on_flush
        self.size_threshold = size_threshold
        self.timeout_seconds = timeout_seconds
        self._events: list[CanonicalEvent] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        """Events in the open batch."""
        return len(self._events)

    @property
    def inflight_count(self) -> int:
        """Flushes still being handled."""
        return len(self._inflight)

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None

    def append(self, event: CanonicalEvent) -> None:
        """Add one event; flush synchronously when the threshold is reached."""
        self._events.append(event)

        if len(self._events) >= self.size_threshold:
            self.flush()
        elif self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.timeout_seconds, self._on_timeout)

    def extend(self, events: Iterable[CanonicalEvent]) -> None:
        """Append events in order. Large inputs are cut into threshold-sized batches."""
        for event in events:
            self.append(event)

    def flush(self) -> Optional[asyncio.Task]:
        """
        Detach the open batch and schedule the flush handler for it.
        Returns the handler task, or None when there was nothing to flush.
        """
        if not self._events:
            self._cancel_timer()
            return None

        # Detach-and-reset: must stay free of awaits
        batch = Batch(events=self._events)
        self._events = []
        self._cancel_timer()

        logger.info(
            "Flushing batch of %d events",
            len(batch), extra={"batch_id": batch.batch_id},
        )
        task = asyncio.get_running_loop().create_task(self._run_handler(batch))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def drain(self, timeout: float = 10.0) -> None:
        """
        Flush the open batch and wait for in-flight flushes.
        Flushes still running after the timeout are cancelled.
        """
        self.flush()
        if not self._inflight:
            return

        pending_tasks = set(self._inflight)
        logger.info("Draining %d in-flight batch flushes", len(pending_tasks))
        done, pending = await asyncio.wait(pending_tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled %d batch flushes still running at shutdown", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    def _on_timeout(self) -> None:
        self._timer = None
        self.flush()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _run_handler(self, batch: Batch) -> None:
        """Run the flush handler. Errors are logged, never raised to the caller."""
        try:
            await self._on_flush(batch)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(
                "Batch flush failed, %d events dropped: %s",
                len(batch), str(e), extra={"batch_id": batch.batch_id},
            )
