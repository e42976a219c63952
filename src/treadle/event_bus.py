"""In-process event bus with bounded, gap-aware subscriber queues."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING

from treadle.events import EventGap
from treadle.limits import EVENT_QUEUE_SIZE

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from treadle.events import EngineEvent, EventHandler

logger = logging.getLogger(__name__)


class SubscriptionClosed(Exception):
    """Raised by ``Subscription.get`` once the subscription is closed and drained."""


class Subscription:
    """Bounded event queue owned by one consumer.

    When the queue is full the oldest unread event is dropped. The consumer
    then receives an ``EventGap`` carrying the number of dropped events before
    the events that survived, so it always knows context was lost.
    """

    def __init__(
        self,
        bus: InMemoryEventBus,
        event_types: set[str] | None,
        maxsize: int,
    ) -> None:
        if maxsize < 1:
            raise ValueError("Subscription queue size must be positive")
        self._bus = bus
        self._event_types = frozenset(event_types) if event_types else None
        self._buffer: deque[EngineEvent] = deque()
        self._maxsize = maxsize
        self._dropped = 0
        self._wakeup = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._buffer) + (1 if self._dropped else 0)

    def accepts(self, event: EngineEvent) -> bool:
        return self._event_types is None or event.event_type in self._event_types

    def offer(self, event: EngineEvent) -> None:
        """Enqueue without blocking; drops the oldest event on overflow."""
        if self._closed:
            return
        if len(self._buffer) >= self._maxsize:
            self._buffer.popleft()
            self._dropped += 1
        self._buffer.append(event)
        self._wakeup.set()

    def get_nowait(self) -> EngineEvent | None:
        if self._dropped:
            gap = EventGap(dropped=self._dropped)
            self._dropped = 0
            return gap
        if self._buffer:
            return self._buffer.popleft()
        return None

    async def get(self) -> EngineEvent:
        """Wait for the next event (or gap marker)."""
        while True:
            event = self.get_nowait()
            if event is not None:
                return event
            if self._closed:
                raise SubscriptionClosed
            self._wakeup.clear()
            await self._wakeup.wait()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._wakeup.set()
        self._bus._discard(self)

    def __aiter__(self) -> AsyncIterator[EngineEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[EngineEvent]:
        try:
            while True:
                try:
                    yield await self.get()
                except SubscriptionClosed:
                    return
        finally:
            self.close()


class InMemoryEventBus:
    """Async event bus with fan-out to handlers and bounded subscribers.

    Suitable for single-process use. Events are not persisted or replayed;
    new subscribers only receive future events.
    """

    def __init__(self, *, default_queue_size: int = EVENT_QUEUE_SIZE) -> None:
        self._handlers: list[tuple[str | None, EventHandler]] = []
        self._subscriptions: list[Subscription] = []
        self._default_queue_size = default_queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: EngineEvent) -> None:
        """Publish event to all matching handlers and subscribers."""
        for filter_type, handler in list(self._handlers):
            if filter_type is None or event.event_type == filter_type:
                try:
                    handler(event)
                except Exception:
                    logger.exception("Event handler failed for %s", event.event_type)

        for subscription in list(self._subscriptions):
            if subscription.accepts(event):
                subscription.offer(event)

    def subscribe(
        self,
        event_types: set[str] | None = None,
        *,
        maxsize: int | None = None,
    ) -> Subscription:
        """Create a subscription receiving events published from now on."""
        subscription = Subscription(
            self,
            event_types,
            maxsize if maxsize is not None else self._default_queue_size,
        )
        self._subscriptions.append(subscription)
        return subscription

    def add_handler(self, handler: EventHandler, event_type: str | None = None) -> None:
        """Register a synchronous handler for events."""
        self._handlers.append((event_type, handler))

    def remove_handler(self, handler: EventHandler) -> None:
        """Remove a previously registered handler."""
        self._handlers = [(t, h) for t, h in self._handlers if h is not handler]

    def _discard(self, subscription: Subscription) -> None:
        self._subscriptions = [s for s in self._subscriptions if s is not subscription]


__all__ = ["InMemoryEventBus", "Subscription", "SubscriptionClosed"]
