"""Shared consumer lifecycle: status, bus subscriptions, channel filter, close."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Literal

from loguru import logger

from slackrelay.config import ConsumerConfig
from slackrelay.core.constants import (
    AUTHENTICATED,
    CONNECTION_OPENED,
    DISCONNECT,
    DM_PREFIX,
    UNABLE_TO_START,
    ConsumerState,
)
from slackrelay.events import Authenticated, ConnectionOpened, Disconnected, MessageEvent, UnableToStart
from slackrelay.gateway.bus import Bus, Subscription
from slackrelay.gateway.bus import bus as default_bus
from slackrelay.gateway.registry import ConnectionRegistry
from slackrelay.gateway.registry import registry as default_registry

if TYPE_CHECKING:
    from slackrelay.adapters.connection import Connection


@dataclass(frozen=True)
class Status:
    """Display status for a consumer."""

    level: Literal["ok", "error"]
    label: str

    def to_dict(self) -> dict[str, str]:
        return {"level": self.level, "label": self.label}


@dataclass
class OutputRecord:
    """Record emitted by Auditor and HistorySearch."""

    payload: str | None
    channel_id: str | None
    raw: dict[str, Any] = field(default_factory=dict)
    timestamp: str | None = None
    author: str | None = None
    attachments: list[Any] | None = None

    @classmethod
    def from_message(cls, evt: MessageEvent) -> OutputRecord:
        return cls(
            payload=evt.text,
            channel_id=evt.channel_id,
            raw=evt.raw,
            timestamp=evt.timestamp,
            author=evt.author_id,
            attachments=evt.attachments,
        )

    def to_dict(self) -> dict[str, Any]:
        meta: dict[str, Any] = {"timestamp": self.timestamp, "author": self.author}
        if self.attachments is not None:
            meta["attachments"] = self.attachments
        return {
            "payload": self.payload,
            "channel": {"id": self.channel_id},
            "raw": self.raw,
            "meta": meta,
        }


OutputCallback = Callable[[OutputRecord], None]
StatusCallback = Callable[[Status], None]
ErrorCallback = Callable[[BaseException], None]

CONNECTED = Status("ok", "connected")
CONNECTING = Status("ok", "connecting")
DISCONNECTED = Status("error", "disconnected")
UNABLE_TO_CONNECT = Status("error", "unable to connect")
CLOSED = Status("error", "closed")


def split_channels(channels: str | None) -> list[str]:
    """Names from a comma-separated allow-list; blanks dropped."""
    if not channels:
        return []
    return [name.strip() for name in channels.split(",") if name.strip()]


class Consumer:
    """Base for consumers bound to one token.

    Subclasses add topic handlers via ``topics()``. Every handler is scoped to
    this consumer's token and stops firing once the consumer is closed.
    """

    kind: ClassVar[str] = "consumer"

    def __init__(
        self,
        config: ConsumerConfig,
        *,
        registry: ConnectionRegistry | None = None,
        bus: Bus | None = None,
        on_output: OutputCallback | None = None,
        on_status: StatusCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self._config = config
        self._registry = registry if registry is not None else default_registry
        self._bus = bus if bus is not None else default_bus
        self._on_output = on_output
        self._on_status = on_status
        self._on_error = on_error
        self._state = ConsumerState.INITIALIZING
        self._status = CONNECTING
        self._subscriptions: list[Subscription] = []
        self._tasks: set[asyncio.Task] = set()

        self._connection = self._registry.acquire(config.token)
        self._token = self._connection.token

        try:
            handlers: dict[str, Callable[[Any], None]] = {
                AUTHENTICATED: self._on_authenticated,
                CONNECTION_OPENED: self._on_connection_opened,
                DISCONNECT: self._on_disconnect,
                UNABLE_TO_START: self._on_unable_to_start,
            }
            handlers.update(self.topics())
            for topic, handler in handlers.items():
                self._subscribe(topic, handler)

            if self._connection.is_open:
                self._transition(ConsumerState.CONNECTED, CONNECTED)
                self._joined_open()
            else:
                self._set_status(CONNECTING)
        except BaseException:
            # Give back the reference and subscriptions taken so far
            self.close()
            raise

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._config.id or '?'} {self._state.value}>"

    @property
    def config(self) -> ConsumerConfig:
        return self._config

    @property
    def token(self) -> str:
        return self._token

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def status(self) -> Status:
        return self._status

    @property
    def closed(self) -> bool:
        return self._state is ConsumerState.CLOSED

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return tuple(self._subscriptions)

    def topics(self) -> dict[str, Callable[[Any], None]]:
        """Extra topic handlers for this consumer. Override."""
        return {}

    def _joined_open(self) -> None:
        """Called once when construction finds the shared connection already open."""

    def _subscribe(self, topic: str, handler: Callable[[Any], None]) -> None:
        def scoped(payload: Any) -> None:
            if self.closed:
                return
            if getattr(payload, "token", None) != self._token:
                return
            handler(payload)

        self._subscriptions.append(self._bus.subscribe(topic, scoped))

    # -- Lifecycle -----------------------------------------------------------

    def _set_status(self, status: Status) -> None:
        self._status = status
        if self._on_status is not None:
            self._on_status(status)

    def _transition(self, state: ConsumerState, status: Status) -> None:
        if self.closed:
            return
        if state is not self._state:
            logger.debug("{}: {} -> {}", self, self._state.value, state.value)
        self._state = state
        self._set_status(status)

    def _on_authenticated(self, evt: Authenticated) -> None:
        self._transition(ConsumerState.CONNECTED, CONNECTED)

    def _on_connection_opened(self, evt: ConnectionOpened) -> None:
        self._transition(ConsumerState.CONNECTED, CONNECTED)

    def _on_disconnect(self, evt: Disconnected) -> None:
        self._transition(ConsumerState.DISCONNECTED, DISCONNECTED)

    def _on_unable_to_start(self, evt: UnableToStart) -> None:
        self._transition(ConsumerState.DISCONNECTED, UNABLE_TO_CONNECT)

    def close(self) -> None:
        """Revoke subscriptions, cancel tasks, release the token. Idempotent."""
        if self.closed:
            return
        self._state = ConsumerState.CLOSED
        for sub in self._subscriptions:
            self._bus.unsubscribe(sub)
        self._subscriptions.clear()
        for task in list(self._tasks):
            task.cancel()
        self._registry.release(self._token, self._connection)
        self._set_status(CLOSED)
        logger.debug("{} closed", self)

    # -- Helpers for subclasses ----------------------------------------------

    def channel_is_watched(self, channel_id: str | None) -> bool:
        """Apply the configured channel allow-list to channel_id."""
        names = split_channels(self._config.channels)
        if not names:
            return True
        if not channel_id:
            return False
        if channel_id.startswith(DM_PREFIX):
            return True
        for name in names:
            resolved = self._connection.resolve_channel_by_name(name)
            if resolved is not None and resolved == channel_id:
                return True
        return False

    def emit(self, record: OutputRecord) -> bool:
        """Hand record to the output callback. A failing callback is logged, not raised."""
        if self.closed or self._on_output is None:
            return False
        try:
            self._on_output(record)
        except Exception:
            logger.exception("{}: output callback failed", self)
            return False
        return True

    def report_error(self, exc: BaseException) -> None:
        if self.closed:
            return
        logger.warning("{}: {}", self, exc)
        self._set_status(Status("error", str(exc) or type(exc).__name__))
        if self._on_error is not None:
            self._on_error(exc)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("{}: background task failed", self)

    async def wait_idle(self) -> None:
        """Wait for background tasks spawned so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
