"""Connection adapter: owns one upstream transport and publishes its lifecycle on the bus."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Mapping
from typing import TYPE_CHECKING, Any, TypeVar

from loguru import logger

from slackrelay import events
from slackrelay.adapters.base import Transport
from slackrelay.core.constants import DEFAULT_REQUEST_TIMEOUT, ConnectionState
from slackrelay.core.errors import NotConnected, RelayError, RelayTimeout, SearchUnavailable, TransportError

if TYPE_CHECKING:
    from slackrelay.gateway.bus import Bus

T = TypeVar("T")


class Connection:
    """One upstream session for a token.

    Translates transport callbacks into bus publications and exposes send,
    search and directory lookup. Starts connecting on construction.
    """

    def __init__(
        self,
        token: str,
        transport: Transport,
        bus: Bus,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._token = token
        self._transport = transport
        self._bus = bus
        self._timeout = request_timeout
        self._state = ConnectionState.CONNECTING
        self._closed = False
        self._transport.start(self)

    @property
    def token(self) -> str:
        return self._token

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        return f"<Connection …{self._token[-4:]} {self._state.value}>"

    def _publish(self, item: tuple[str, object]) -> None:
        if self._closed:
            return
        topic, payload = item
        self._bus.publish(topic, payload)

    # -- TransportHandler ----------------------------------------------------

    def on_connecting(self) -> None:
        if self._closed:
            return
        self._state = ConnectionState.CONNECTING
        self._publish(events.connecting(self._token))

    def on_authenticated(self, self_identity: Mapping[str, Any], team: Mapping[str, Any]) -> None:
        if self._closed:
            return
        self._state = ConnectionState.AUTHENTICATED
        self._publish(events.authenticated(self._token, self_identity, team))

    def on_unable_to_start(self, error: BaseException | str | None, recoverable: bool) -> None:
        if self._closed:
            return
        self._state = ConnectionState.FAILED_TO_START
        self._publish(events.unable_to_start(self._token, error, recoverable=recoverable))

    def on_disconnect(self, error: BaseException | str | None, code: int | None) -> None:
        if self._closed:
            return
        self._state = ConnectionState.DISCONNECTED
        self._publish(events.disconnect(self._token, error, code))

    def on_connection_opened(self) -> None:
        if self._closed:
            return
        self._state = ConnectionState.OPEN
        self._publish(events.connection_opened(self._token))
        self._publish(events.history(self._token))

    def on_message(self, raw: Mapping[str, Any]) -> None:
        if self._closed:
            return
        self._publish(events.message(self._token, raw))

    # -- Operations ----------------------------------------------------------

    async def _call(self, op: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise RelayTimeout(
                f"{op} timed out after {self._timeout}s",
                code="timeout",
                details={"op": op, "timeout": self._timeout},
                original_error=exc,
            ) from exc
        except RelayError:
            raise
        except Exception as exc:
            raise TransportError(
                f"{op} failed: {exc}",
                code="transport_error",
                details={"op": op},
                original_error=exc,
            ) from exc

    async def send(self, text: str, channel_id: str) -> None:
        """Send text to a channel, group or DM id."""
        if not self.is_open:
            raise NotConnected(
                "connection is not open",
                code="not_connected",
                details={"state": self._state.value, "channel_id": channel_id},
            )
        await self._call("send", self._transport.send(text, channel_id))
        logger.debug("Sent {} chars to {}", len(text), channel_id)

    async def search(self, query: str) -> list[dict[str, Any]]:
        """Search messages visible to this token."""
        if not self.is_open:
            raise SearchUnavailable(
                "connection is not open",
                code="search_unavailable",
                details={"state": self._state.value},
            )
        return await self._call("search", self._transport.search(query))

    def resolve_channel_by_name(self, name: str) -> str | None:
        """Channel or group id for name, from the cached directory. None if unknown."""
        name = name.strip().lstrip("#")
        if not name:
            return None
        return self._transport.channel_id_by_name(name)

    def disconnect(self) -> None:
        """Stop the transport; no further events are published. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._state = ConnectionState.DISCONNECTED
        try:
            self._transport.stop()
        except Exception as exc:
            logger.exception("Transport stop failed for {}: {}", self, exc)
