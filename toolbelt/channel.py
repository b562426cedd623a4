"""
Publish/subscribe channel used for every stream of events in the toolbelt.

A channel is owned by the thing that produces the events (a process handle,
a serial session, the hot-plug monitor, a recovery pipeline). Delivery is
synchronous in the publisher's thread, over a snapshot of the subscriber
list, so subscribing or cancelling from inside a callback is safe.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription:
    """Handle returned by ``Channel.subscribe``; cancel to stop delivery."""

    def __init__(self, channel: "Channel", callback: Callable[[Any], None]):
        self._channel = channel
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if self._active:
            self._active = False
            self._channel._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cancel()
        return False


class Channel(Generic[T]):
    """Thread-safe fan-out of events to subscribers."""

    def __init__(self, name: str = "channel"):
        self.name = name
        self._subs: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        sub = Subscription(self, callback)
        with self._lock:
            self._subs.append(sub)
        return sub

    def publish(self, event: T) -> int:
        """Deliver ``event`` to all current subscribers.

        Returns the number of subscribers the event was delivered to. A
        subscriber that raises is logged and skipped.
        """
        with self._lock:
            subs = list(self._subs)
        delivered = 0
        for sub in subs:
            if not sub.active:
                continue
            try:
                sub._callback(event)
                delivered += 1
            except Exception:
                logger.exception("Subscriber on %s raised", self.name)
        return delivered

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def clear(self) -> None:
        with self._lock:
            subs, self._subs = self._subs, []
        for sub in subs:
            sub._active = False

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)
