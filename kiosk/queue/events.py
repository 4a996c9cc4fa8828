from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Mapping

from kiosk.metrics import MetricsRegistry, metrics_registry
from kiosk.metrics.definitions import EVENTS_DROPPED, EVENTS_PUBLISHED

from .models import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TICKET_CREATED = "ticketCreated"
    QUEUE_UPDATE = "queueUpdate"


@dataclass(slots=True, frozen=True)
class QueueEvent:
    """State-change notification for displays and staff consoles.

    ``window_id`` lets subscribers on a department channel filter to one window.
    """

    type: EventType
    department: str
    window_id: str | None
    payload: Mapping[str, Any]
    emitted_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "department": self.department,
            "window_id": self.window_id,
            "payload": dict(self.payload),
            "emitted_at": self.emitted_at.isoformat(),
        }


class Subscription:
    """Async iterator over the events of one channel."""

    def __init__(self, broadcaster: "EventBroadcaster", channel: str, queue: asyncio.Queue[QueueEvent]) -> None:
        self._broadcaster = broadcaster
        self.channel = channel
        self._queue = queue
        self._closed = False

    def __aiter__(self) -> AsyncIterator[QueueEvent]:
        return self

    async def __anext__(self) -> QueueEvent:
        if self._closed:
            raise StopAsyncIteration
        return await self._queue.get()

    def offer(self, event: QueueEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._broadcaster._remove(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False


class EventBroadcaster:
    """Best-effort, at-most-once fan-out of queue events per department channel.

    A subscriber that is not connected, or whose buffer is full, misses the
    event and is expected to pull the full queue view when it reconnects.
    """

    def __init__(self, *, queue_size: int = 100, registry: MetricsRegistry | None = None) -> None:
        if queue_size <= 0:
            raise ValueError("queue_size must be greater than zero")
        self.queue_size = queue_size
        self._subscribers: dict[str, list[Subscription]] = {}
        self._metrics = registry or metrics_registry

    def subscribe(self, channel: str) -> Subscription:
        subscription = Subscription(self, channel, asyncio.Queue(maxsize=self.queue_size))
        self._subscribers.setdefault(channel, []).append(subscription)
        logger.debug("Subscriber joined channel %s (%d total)", channel, self.subscriber_count(channel))
        return subscription

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    def publish(self, channel: str, event: QueueEvent) -> int:
        """Deliver ``event`` to every current subscriber without blocking. Returns deliveries."""

        delivered = 0
        for subscription in list(self._subscribers.get(channel, ())):
            if subscription.offer(event):
                delivered += 1
                continue
            self._metrics.counter(EVENTS_DROPPED).inc()
            logger.warning("Dropped %s event for a slow subscriber on %s", event.type.value, channel)
        self._metrics.counter(EVENTS_PUBLISHED, label_names=("type",)).inc(labels={"type": event.type.value})
        return delivered

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.channel)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.channel, None)
