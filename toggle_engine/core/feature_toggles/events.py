"""Feature update fan-out.

Provides a multicast stream of ``FeatureUpdate`` events:
- Explicit subscribe / unsubscribe
- No replay: subscribers only see updates published after subscribing
- Per-subscriber bounded buffers; a full buffer drops its oldest update, so
  a slow subscriber never blocks publishers or other subscribers
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, List, Optional

from toggle_engine.core.feature_toggles.models import FeatureUpdate
from toggle_engine.utils.metrics import feature_toggle_subscriber_drops_total

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256

_CLOSED = object()


class Subscription:
    """One subscriber's view of the update stream.

    Usable as an async iterator and as a (sync or async) context manager
    that unsubscribes on exit.
    """

    def __init__(self, broadcaster: "FeatureUpdateBroadcaster", maxsize: int):
        self.id = str(uuid.uuid4())
        self.maxsize = maxsize
        self.dropped = 0
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _offer(self, item: object) -> bool:
        """Enqueue without blocking; evict the oldest item when full."""
        dropped = False
        while True:
            try:
                self._queue.put_nowait(item)
                return dropped
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    dropped = True
                except asyncio.QueueEmpty:
                    pass

    def _deliver(self, update: FeatureUpdate) -> None:
        if self._closed:
            return
        if self._offer(update):
            self.dropped += 1
            feature_toggle_subscriber_drops_total.inc()
            logger.debug(f"Subscriber {self.id} buffer full; dropped oldest update")

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._offer(_CLOSED)

    async def get(self) -> FeatureUpdate:
        """Wait for the next update; raises ``StopAsyncIteration`` once closed."""
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def get_nowait(self) -> Optional[FeatureUpdate]:
        """Return the next buffered update, or None."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            return None
        return item

    def drain(self) -> List[FeatureUpdate]:
        """Return every buffered update."""
        updates = []
        while (update := self.get_nowait()) is not None:
            updates.append(update)
        return updates

    def unsubscribe(self) -> None:
        self._broadcaster.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> FeatureUpdate:
        return await self.get()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.unsubscribe()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.unsubscribe()


class FeatureUpdateBroadcaster:
    """Multicast channel for feature updates."""

    def __init__(self, default_queue_size: int = DEFAULT_QUEUE_SIZE):
        if default_queue_size < 1:
            raise ValueError("default_queue_size must be positive")
        self.default_queue_size = default_queue_size
        self._subscriptions: Dict[str, Subscription] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, maxsize or self.default_queue_size)
        self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        removed = self._subscriptions.pop(subscription.id, None)
        subscription._close()
        return removed is not None

    def publish(self, update: FeatureUpdate) -> int:
        """Deliver to every current subscriber; returns the recipient count."""
        subscribers = list(self._subscriptions.values())
        for subscription in subscribers:
            subscription._deliver(update)
        return len(subscribers)

    def close(self) -> None:
        """Unsubscribe everyone; pending iterators finish."""
        for subscription in list(self._subscriptions.values()):
            self.unsubscribe(subscription)
