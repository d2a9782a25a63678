"""Gateway: event bus, connection registry, lifecycle log."""

from slackrelay.gateway.bus import Bus, Subscription, bus, init_bus, teardown_bus
from slackrelay.gateway.lifecycle_log import LifecycleLogger
from slackrelay.gateway.registry import ConnectionRegistry, registry

__all__ = [
    "Bus",
    "ConnectionRegistry",
    "LifecycleLogger",
    "Subscription",
    "bus",
    "init_bus",
    "registry",
    "teardown_bus",
]
