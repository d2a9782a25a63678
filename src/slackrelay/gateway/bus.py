"""Event bus: process-wide publish/subscribe keyed by topic name."""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

Handler = Callable[[Any], None]

__all__ = ["Bus", "Handler", "Subscription", "bus", "init_bus", "teardown_bus"]


@dataclass(frozen=True)
class Subscription:
    """Revocation handle returned by Bus.subscribe."""

    topic: str
    id: int


class Bus:
    """Topic-keyed pub/sub. Handlers run synchronously, in subscription order."""

    def __init__(self) -> None:
        self._handlers: dict[str, dict[int, Handler]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        """Register handler for topic."""
        with self._lock:
            sub = Subscription(topic=topic, id=next(self._ids))
            self._handlers.setdefault(topic, {})[sub.id] = handler
        return sub

    def unsubscribe(self, subscription: Subscription | None) -> bool:
        """Revoke a subscription. Unknown or already revoked handles are a no-op."""
        if subscription is None:
            return False
        with self._lock:
            handlers = self._handlers.get(subscription.topic)
            if not handlers or subscription.id not in handlers:
                return False
            del handlers[subscription.id]
            if not handlers:
                del self._handlers[subscription.topic]
        return True

    def publish(self, topic: str, payload: Any = None) -> int:
        """Deliver payload to every handler of topic. Returns handlers invoked."""
        with self._lock:
            handlers = list(self._handlers.get(topic, {}).values())

        for handler in handlers:
            try:
                handler(payload)
            except Exception as exc:
                logger.exception("Bus handler {} failed on {}: {}", handler, topic, exc)
        return len(handlers)

    def subscriber_count(self, topic: str | None = None) -> int:
        """Subscriptions for topic, or across all topics."""
        with self._lock:
            if topic is not None:
                return len(self._handlers.get(topic, {}))
            return sum(len(h) for h in self._handlers.values())

    def clear(self) -> None:
        """Drop every subscription."""
        with self._lock:
            self._handlers.clear()


bus = Bus()


def init_bus() -> Bus:
    """Reset the process-wide bus and return it."""
    bus.clear()
    return bus


def teardown_bus() -> None:
    """Drop all process-wide subscriptions."""
    remaining = bus.subscriber_count()
    if remaining:
        logger.debug("Bus teardown: dropping {} subscriptions", remaining)
    bus.clear()
