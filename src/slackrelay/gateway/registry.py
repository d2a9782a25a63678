"""Connection registry: one live connection per token, reference-counted by caller."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from slackrelay.adapters.base import Transport
from slackrelay.adapters.connection import Connection
from slackrelay.core.constants import DEFAULT_REQUEST_TIMEOUT
from slackrelay.core.errors import InvalidToken
from slackrelay.gateway.bus import Bus
from slackrelay.gateway.bus import bus as default_bus

TransportFactory = Callable[[str], Transport]


def _default_transport_factory(token: str) -> Transport:
    from slackrelay.adapters.slack import SlackTransport

    return SlackTransport(token)


def normalize_token(token: object) -> str:
    """Trimmed token; InvalidToken if missing or blank."""
    if not isinstance(token, str) or not token.strip():
        raise InvalidToken("no token specified", code="invalid_token")
    return token.strip()


@dataclass
class _Entry:
    connection: Connection
    refs: int = 0


class ConnectionRegistry:
    """Maps token -> Connection. Creates on first acquire, disconnects on last release."""

    def __init__(
        self,
        bus: Bus | None = None,
        transport_factory: TransportFactory | None = None,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._bus = bus if bus is not None else default_bus
        self._transport_factory = transport_factory or _default_transport_factory
        self._request_timeout = request_timeout
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    @property
    def request_timeout(self) -> float:
        return self._request_timeout

    @request_timeout.setter
    def request_timeout(self, value: float) -> None:
        # Applies to connections created afterwards
        self._request_timeout = float(value)

    def acquire(self, token: str) -> Connection:
        """Return the live connection for token, creating it if needed."""
        key = normalize_token(token)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                connection = Connection(
                    key,
                    self._transport_factory(key),
                    self._bus,
                    request_timeout=self._request_timeout,
                )
                entry = _Entry(connection)
                self._entries[key] = entry
                logger.info("Registry: created connection {}", connection)
            entry.refs += 1
            return entry.connection

    def release(self, token: str, connection: Connection | None = None) -> None:
        """Drop one reference; disconnect and forget the connection at zero.

        With ``connection``, only a reference to that same connection is
        dropped. A holder of an older connection for the token (one replaced
        after ``close_all``) leaves the current entry alone.
        """
        if not isinstance(token, str):
            return
        key = token.strip()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return
            if connection is not None and entry.connection is not connection:
                logger.debug("Registry: ignoring release of stale {}", connection)
                return
            entry.refs -= 1
            if entry.refs > 0:
                logger.debug("Registry: {} still has {} references", entry.connection, entry.refs)
                return
            del self._entries[key]
        logger.info("Registry: disconnecting {}", entry.connection)
        entry.connection.disconnect()

    def get(self, token: str) -> Connection | None:
        """Live connection for token without taking a reference."""
        entry = self._entries.get(token.strip()) if isinstance(token, str) else None
        return entry.connection if entry else None

    def refcount(self, token: str) -> int:
        entry = self._entries.get(token.strip()) if isinstance(token, str) else None
        return entry.refs if entry else 0

    def close_all(self) -> None:
        """Disconnect every connection regardless of references (shutdown)."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            entry.connection.disconnect()
        if entries:
            logger.info("Registry: closed {} connections", len(entries))

    def __contains__(self, token: object) -> bool:
        return isinstance(token, str) and token.strip() in self._entries

    def __len__(self) -> int:
        return len(self._entries)


registry = ConnectionRegistry()
