from __future__ import annotations

import logging
import threading
from typing import Any, Callable


FEED_LOGGER = logging.getLogger("device_rental.feed")


class ChangeFeed:
    """Per-collection change notifications for subscribers in this process.

    Writers publish after their commit; the payload is whatever the collection
    defines as its snapshot. A failing subscriber is logged and does not stop the
    others from being notified.
    """

    def __init__(self, collection: str):
        self.collection = collection
        self._lock = threading.Lock()
        self._subscribers: list[Callable[..., Any]] = []

    def subscribe(self, callback: Callable[..., Any]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, *args: Any, **kwargs: Any) -> int:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(*args, **kwargs)
            except Exception:
                FEED_LOGGER.exception("Subscriber failed collection=%s", self.collection)
        return len(subscribers)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


RENTAL_FEED = ChangeFeed("rentals")
