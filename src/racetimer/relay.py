"""Best-effort text fan-out between realtime peers."""
from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from typing import Deque, Dict, Optional

logger = logging.getLogger(__name__)


class Subscription:
    """One peer's bounded inbox; the oldest message is dropped on overflow."""

    def __init__(self, hub: "BroadcastHub", peer_id: int, maxlen: int):
        self.hub = hub
        self.peer_id = peer_id
        self._buffer: Deque[str] = deque(maxlen=maxlen)
        self._ready = asyncio.Event()
        self.dropped = 0
        self.closed = False

    def _deliver(self, message: str) -> None:
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
        self._buffer.append(message)
        self._ready.set()

    def pending(self) -> int:
        return len(self._buffer)

    def get_nowait(self) -> Optional[str]:
        if not self._buffer:
            self._ready.clear()
            return None
        return self._buffer.popleft()

    async def get(self) -> Optional[str]:
        """Next message, or ``None`` once the subscription is closed."""
        while not self._buffer:
            if self.closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()

    def publish(self, message: str) -> int:
        return self.hub.publish(message, sender=self)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._ready.set()
        self.hub._remove(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class BroadcastHub:
    def __init__(self, buffer_size: int = 100):
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self.buffer_size = buffer_size
        self._subscribers: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, next(self._ids), self.buffer_size)
        self._subscribers[subscription.peer_id] = subscription
        logger.debug("Peer %d subscribed (%d total)", subscription.peer_id, len(self._subscribers))
        return subscription

    def publish(self, message: str, sender: Optional[Subscription] = None) -> int:
        """Deliver *message* to every subscriber except *sender*; never blocks."""
        delivered = 0
        for subscription in list(self._subscribers.values()):
            if subscription is sender:
                continue
            subscription._deliver(message)
            delivered += 1
        return delivered

    def _remove(self, subscription: Subscription) -> None:
        if self._subscribers.pop(subscription.peer_id, None) is not None:
            if subscription.dropped:
                logger.info("Peer %d left after dropping %d messages", subscription.peer_id, subscription.dropped)
            else:
                logger.debug("Peer %d unsubscribed", subscription.peer_id)
