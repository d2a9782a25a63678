"""Topic names and state enums."""

from __future__ import annotations

from enum import Enum

TOPIC_PREFIX = "slackrelay.client."

CONNECTING = TOPIC_PREFIX + "connecting"
AUTHENTICATED = TOPIC_PREFIX + "authenticated"
UNABLE_TO_START = TOPIC_PREFIX + "unableToStart"
DISCONNECT = TOPIC_PREFIX + "disconnect"
CONNECTION_OPENED = TOPIC_PREFIX + "connectionOpened"
HISTORY = TOPIC_PREFIX + "history"
MESSAGE = TOPIC_PREFIX + "message"

TOPICS: tuple[str, ...] = (
    CONNECTING,
    AUTHENTICATED,
    UNABLE_TO_START,
    DISCONNECT,
    CONNECTION_OPENED,
    HISTORY,
    MESSAGE,
)

DELETED_SUBTYPE = "message_deleted"
DM_PREFIX = "D"

PLACEHOLDER_NOTICE = "Nothing was specified, please pass a payload property to the msg object"

DEFAULT_REQUEST_TIMEOUT = 10.0


class ConnectionState(Enum):
    """Upstream connection state."""

    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    OPEN = "open"
    DISCONNECTED = "disconnected"
    FAILED_TO_START = "failed_to_start"


class ConsumerState(Enum):
    """Consumer lifecycle state."""

    INITIALIZING = "initializing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"
