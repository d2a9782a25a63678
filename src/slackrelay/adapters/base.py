"""Upstream transport interface: what a Connection needs from a real-time client."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol


class TransportHandler(Protocol):
    """Native lifecycle callbacks. Invoked on the event loop thread."""

    def on_connecting(self) -> None: ...

    def on_authenticated(self, self_identity: Mapping[str, Any], team: Mapping[str, Any]) -> None: ...

    def on_unable_to_start(self, error: BaseException | str | None, recoverable: bool) -> None: ...

    def on_disconnect(self, error: BaseException | str | None, code: int | None) -> None: ...

    def on_connection_opened(self) -> None: ...

    def on_message(self, raw: Mapping[str, Any]) -> None: ...


class Transport(Protocol):
    """Black-box real-time client for one token."""

    def start(self, handler: TransportHandler) -> None:
        """Begin connecting. Must return immediately; progress arrives via handler."""
        ...

    async def send(self, text: str, channel_id: str) -> None: ...

    async def search(self, query: str) -> list[dict[str, Any]]: ...

    def channel_id_by_name(self, name: str) -> str | None:
        """Directory lookup against the cached snapshot."""
        ...

    def stop(self) -> None:
        """Disconnect and release resources. Idempotent."""
        ...
