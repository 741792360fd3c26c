"""Fan-out of daemon events to per-connection outboxes."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any

logger = logging.getLogger(__name__)


class Subscriber:
    """Bounded outbox of one connection.

    Events beyond ``capacity`` evict the oldest queued event. Items added with
    ``put`` (responses, the attach snapshot) are never evicted.
    """

    def __init__(self, capacity: int, name: str = "") -> None:
        if capacity < 1:
            raise ValueError("Subscriber capacity must be >= 1")
        self.name = name
        self._capacity = capacity
        self._items: deque[tuple[bool, Any]] = deque()
        self._event_count = 0
        self._dropped = 0
        self._closed = False
        self._ready = threading.Condition()

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, item: Any) -> None:
        with self._ready:
            if self._closed:
                return
            self._items.append((False, item))
            self._ready.notify()

    def offer(self, event: Any) -> None:
        """Queue an event, evicting the oldest queued event when full. Never blocks."""

        with self._ready:
            if self._closed:
                return
            if self._event_count >= self._capacity:
                self._evict_oldest_event()
            self._items.append((True, event))
            self._event_count += 1
            self._ready.notify()

    def get(self, timeout: float | None = None) -> Any | None:
        """Next item in order, or ``None`` on timeout or once closed and drained."""

        with self._ready:
            if not self._items and not self._closed:
                self._ready.wait(timeout=timeout)
            if not self._items:
                return None
            droppable, item = self._items.popleft()
            if droppable:
                self._event_count -= 1
            return item

    def close(self) -> None:
        with self._ready:
            self._closed = True
            self._ready.notify_all()

    def _evict_oldest_event(self) -> None:
        for index, (droppable, _) in enumerate(self._items):
            if droppable:
                del self._items[index]
                self._event_count -= 1
                self._dropped += 1
                if self._dropped == 1 or self._dropped % 100 == 0:
                    logger.warning(
                        "Subscriber %s is slow, %d events dropped so far",
                        self.name or "?",
                        self._dropped,
                    )
                return


class EventBus:
    """Publishes events to every attached subscriber without blocking."""

    def __init__(self, capacity: int = 256) -> None:
        self._capacity = capacity
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def attach(self, first: Any | None = None, name: str = "") -> Subscriber:
        """Register a subscriber; ``first`` is queued ahead of any later event."""

        subscriber = Subscriber(self._capacity, name=name)
        if first is not None:
            subscriber.put(first)
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber

    def detach(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
        subscriber.close()

    def publish(self, event: Any) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber.offer(event)
