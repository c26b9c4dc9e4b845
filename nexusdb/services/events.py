from __future__ import annotations

import asyncio
from collections import deque
import logging
from typing import AsyncIterator, Deque, Iterable

from nexusdb.domain.events import Event, EventType
from nexusdb.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, bus: "EventBus", types: frozenset[str] | None, maxsize: int) -> None:
        self._bus = bus
        self._types = types
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def wants(self, event: Event) -> bool:
        return self._types is None or event.type in self._types

    def offer(self, event: Event) -> None:
        # Never block publishers; drop the oldest queued event for slow consumers.
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            increment_counter("events_dropped_total")
        self._queue.put_nowait(event)

    async def get(self) -> Event:
        return await self._queue.get()

    def get_nowait(self) -> Event | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        self.closed = True
        self._bus.unsubscribe(self)

    async def __aiter__(self) -> AsyncIterator[Event]:
        while not self.closed:
            yield await self._queue.get()


class EventBus:
    """Outbound channel for lifecycle notifications.

    The orchestrator, deployer and registry publish here; the scheduler and
    monitoring consumers subscribe instead of being wired in as callbacks.
    """

    def __init__(self, *, history_size: int = 1000, queue_size: int = 1000) -> None:
        self._subscriptions: list[Subscription] = []
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._queue_size = queue_size

    def subscribe(self, types: Iterable[EventType] | None = None) -> Subscription:
        subscription = Subscription(self, frozenset(types) if types is not None else None, self._queue_size)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: Event) -> None:
        self._history.append(event)
        increment_counter(f"events_published_total.{event.type}")
        for subscription in list(self._subscriptions):
            if subscription.wants(event):
                subscription.offer(event)
        logger.debug("event_published type=%s deployment_id=%s", event.type, event.deployment_id)

    def emit(self, event_type: EventType, deployment_id: str | None, **data: object) -> Event:
        event = Event(type=event_type, deployment_id=deployment_id, data=dict(data))
        self.publish(event)
        return event

    def history(self, *, deployment_id: str | None = None, event_type: str | None = None) -> list[Event]:
        # Recent events for inspection; bounded by history_size.
        return [
            event
            for event in self._history
            if (deployment_id is None or event.deployment_id == deployment_id)
            and (event_type is None or event.type == event_type)
        ]
