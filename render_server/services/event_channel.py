"""Per-job progress event channel.

Provides a pub/sub mechanism for render progress: each subscriber gets a
bounded asyncio.Queue. Publishing never blocks; a full subscriber loses
progress events, but terminal events always get through (the oldest queued
event is evicted to make room).
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

TERMINAL_EVENT_TYPES = frozenset({"completed", "failed", "cancelled"})


@dataclass
class RenderEvent:
    """Event data for job progress."""

    event_type: str  # "progress", "completed", "failed" or "cancelled"
    job_id: str
    status: str
    progress: int
    phase: str
    phase_progress: dict[str, float] = field(default_factory=dict)
    time_remaining: float | None = None
    elapsed_ms: int = 0
    memory_usage: dict[str, float] | None = None
    error: str | None = None
    output_ref: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENT_TYPES

    def to_message(self) -> dict[str, Any]:
        """Format event for WebSocket transmission."""
        message: dict[str, Any] = {
            "type": self.event_type,
            "job_id": self.job_id,
            "status": self.status,
            "progress": self.progress,
            "phase": self.phase,
            "phase_progress": self.phase_progress,
            "time_remaining": self.time_remaining,
            "elapsed_ms": self.elapsed_ms,
            "memory_usage": self.memory_usage,
            "timestamp": self.timestamp,
        }
        if self.error is not None:
            message["error"] = self.error
        if self.output_ref is not None:
            message["output_ref"] = self.output_ref
        return message


class Subscription:
    """One subscriber's view of a job's events.

    Iterating yields events until (and including) the first terminal event,
    or until the subscription is closed.
    """

    def __init__(self, channel: "JobEventChannel", job_id: str, maxsize: int):
        self.job_id = job_id
        self.queue: asyncio.Queue[RenderEvent | None] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0
        self._close_requested = False
        self._channel = channel

    def offer(self, event: RenderEvent | None) -> bool:
        """Enqueue without blocking; terminal events and close markers evict the oldest."""
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            if event is not None and not event.is_terminal:
                self.dropped += 1
                return False
        self.queue.get_nowait()
        self.dropped += 1
        self.queue.put_nowait(event)
        return True

    async def get(self) -> RenderEvent | None:
        """Next event, or None once the subscription is closed."""
        if self.closed and self.queue.empty():
            return None
        event = await self.queue.get()
        if event is None:
            self.closed = True
        return event

    def close(self) -> None:
        if self._close_requested:
            return
        self._close_requested = True
        self._channel.unsubscribe(self)
        self.offer(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> RenderEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        if event.is_terminal:
            self.close()
        return event


class JobEventChannel:
    """Manages per-job subscriptions and event publishing."""

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        # Map job_id -> subscribers
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)
        # Last event per job, replayed to late subscribers
        self._last_event: dict[str, RenderEvent] = {}

    def subscribe(self, job_id: str, replay_last: bool = True) -> Subscription:
        """Subscribe to events for a job.

        With ``replay_last`` the most recent event (if any) is queued first,
        so a subscriber that joins after the job finished still sees the
        terminal event.
        """
        subscription = Subscription(self, job_id, self.queue_size)
        last = self._last_event.get(job_id)
        if replay_last and last is not None:
            subscription.offer(last)
        if last is None or not last.is_terminal:
            self._subscribers[job_id].add(subscription)
        logger.info(
            f"[EVENTS] New subscriber for job {job_id}. "
            f"Total: {len(self._subscribers.get(job_id, ()))}"
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.job_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.job_id]

    def publish(self, event: RenderEvent) -> int:
        """Publish an event to all subscribers of its job.

        Returns:
            Number of subscribers the event was delivered to
        """
        self._last_event[event.job_id] = event
        subscribers = list(self._subscribers.get(event.job_id, ()))
        if not subscribers:
            logger.debug(f"[EVENTS] No subscribers for job {event.job_id}")
            return 0

        notified = 0
        for subscription in subscribers:
            if subscription.offer(event):
                notified += 1
            else:
                logger.warning(f"[EVENTS] Queue full for subscriber of job {event.job_id}, dropped event")

        if event.is_terminal:
            # Subscriptions end after the terminal event
            self._subscribers.pop(event.job_id, None)
        return notified

    def last_event(self, job_id: str) -> RenderEvent | None:
        return self._last_event.get(job_id)

    def forget(self, job_id: str) -> None:
        """Drop all state for an evicted job, closing remaining subscriptions."""
        self._last_event.pop(job_id, None)
        for subscription in list(self._subscribers.get(job_id, ())):
            subscription.close()
        self._subscribers.pop(job_id, None)

    def subscriber_count(self, job_id: str) -> int:
        """Get the number of active subscribers for a job."""
        return len(self._subscribers.get(job_id, ()))
