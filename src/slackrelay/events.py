"""Event payloads and topic factories for the client bus."""

from __future__ import annotations

import functools
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from slackrelay.core.constants import (
    AUTHENTICATED,
    CONNECTING,
    CONNECTION_OPENED,
    DELETED_SUBTYPE,
    DISCONNECT,
    HISTORY,
    MESSAGE,
    UNABLE_TO_START,
)
from slackrelay.core.errors import MalformedPayload


@dataclass
class Connecting:
    """Upstream connection started connecting."""

    token: str


@dataclass
class Authenticated:
    """Upstream accepted the token."""

    token: str
    self_identity: dict[str, Any] = field(default_factory=dict)
    team: dict[str, Any] = field(default_factory=dict)


@dataclass
class UnableToStart:
    """Upstream connection failed to start (may be recoverable)."""

    token: str
    error: BaseException | str | None = None
    recoverable: bool = True


@dataclass
class Disconnected:
    """Upstream connection dropped or was closed."""

    token: str
    error: BaseException | str | None = None
    code: int | None = None


@dataclass
class ConnectionOpened:
    """Upstream connection is fully open."""

    token: str


@dataclass
class HistoryReady:
    """A history/search pass may now run."""

    token: str


@dataclass
class MessageEvent:
    """Inbound message, normalized from the native event."""

    token: str
    text: str | None
    channel_id: str | None
    raw: dict[str, Any] = field(default_factory=dict)
    timestamp: str | None = None
    author_id: str | None = None
    attachments: list[Any] | None = None
    subtype: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.subtype == DELETED_SUBTYPE


def event(topic: str):
    """Decorator to mark a factory as producing the payload for a bus topic."""

    def decorator(f: Any) -> Any:
        @functools.wraps(f)
        def wrapper(*args: Any, **kwargs: Any) -> tuple[str, object]:
            evt = f(*args, **kwargs)
            return (topic, evt)

        wrapper.TOPIC = topic  # type: ignore[attr-defined]
        return wrapper

    return decorator


@event(CONNECTING)
def connecting(token: str) -> Connecting:
    return Connecting(token=token)


@event(AUTHENTICATED)
def authenticated(
    token: str,
    self_identity: Mapping[str, Any] | None = None,
    team: Mapping[str, Any] | None = None,
) -> Authenticated:
    return Authenticated(token=token, self_identity=dict(self_identity or {}), team=dict(team or {}))


@event(UNABLE_TO_START)
def unable_to_start(
    token: str,
    error: BaseException | str | None = None,
    *,
    recoverable: bool = True,
) -> UnableToStart:
    return UnableToStart(token=token, error=error, recoverable=recoverable)


@event(DISCONNECT)
def disconnect(
    token: str,
    error: BaseException | str | None = None,
    code: int | None = None,
) -> Disconnected:
    return Disconnected(token=token, error=error, code=code)


@event(CONNECTION_OPENED)
def connection_opened(token: str) -> ConnectionOpened:
    return ConnectionOpened(token=token)


@event(HISTORY)
def history(token: str) -> HistoryReady:
    return HistoryReady(token=token)


def parse_attachments(value: Any) -> list[Any] | None:
    """Return attachments as a list; JSON strings are decoded.

    Raises MalformedPayload when the value is not a list or valid JSON list.
    """
    if value is None:
        return None
    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise MalformedPayload(
                "attachments are not valid JSON",
                code="malformed_attachments",
                original_error=exc,
            ) from exc
    if isinstance(value, Mapping):
        return [dict(value)]
    if not isinstance(value, list):
        raise MalformedPayload(
            "attachments must be a list",
            code="malformed_attachments",
            details={"type": type(value).__name__},
        )
    return value


def _channel_id(raw: Mapping[str, Any]) -> str | None:
    # Search matches carry {"id": ..., "name": ...}; RTM events a bare id
    channel = raw.get("channel")
    if isinstance(channel, Mapping):
        channel = channel.get("id")
    return str(channel) if channel else None


def normalize_message(token: str, raw: Mapping[str, Any]) -> MessageEvent:
    """Build a MessageEvent from a native message event or search match.

    Malformed attachments are logged and dropped; the event itself survives.
    """
    attachments: list[Any] | None = None
    try:
        attachments = parse_attachments(raw.get("attachments"))
    except MalformedPayload as exc:
        logger.warning("Skipping attachments of message {}: {}", raw.get("ts"), exc)

    text = raw.get("text")
    return MessageEvent(
        token=token,
        text=text if text is None else str(text),
        channel_id=_channel_id(raw),
        raw=dict(raw),
        timestamp=raw.get("ts"),
        author_id=raw.get("user"),
        attachments=attachments,
        subtype=raw.get("subtype"),
    )


@event(MESSAGE)
def message(token: str, raw: Mapping[str, Any]) -> MessageEvent:
    return normalize_message(token, raw)
