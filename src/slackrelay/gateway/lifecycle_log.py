"""Logs every client lifecycle topic published on the bus."""

from __future__ import annotations

from loguru import logger

from slackrelay.core.constants import (
    AUTHENTICATED,
    CONNECTING,
    CONNECTION_OPENED,
    DISCONNECT,
    HISTORY,
    MESSAGE,
    UNABLE_TO_START,
)
from slackrelay.events import Authenticated, Disconnected, MessageEvent, UnableToStart
from slackrelay.gateway.bus import Bus, Subscription


class LifecycleLogger:
    """Bus subscriber writing one log line per lifecycle event."""

    def __init__(self, bus: Bus) -> None:
        self._bus = bus
        self._subscriptions: list[Subscription] = [
            bus.subscribe(CONNECTING, self.connecting),
            bus.subscribe(AUTHENTICATED, self.authenticated),
            bus.subscribe(UNABLE_TO_START, self.unable_to_start),
            bus.subscribe(DISCONNECT, self.disconnect),
            bus.subscribe(CONNECTION_OPENED, self.connection_opened),
            bus.subscribe(MESSAGE, self.message),
            bus.subscribe(HISTORY, self.history),
        ]

    def connecting(self, evt: object) -> None:
        logger.info("Slack ~ connecting...")

    def authenticated(self, evt: Authenticated) -> None:
        logger.info(
            "Slack ~ logged in as @{} of team {}",
            evt.self_identity.get("name", "?"),
            evt.team.get("name", "?"),
        )

    def unable_to_start(self, evt: UnableToStart) -> None:
        logger.warning(
            "Slack ~ unable to connect ({}): {}",
            "recoverable" if evt.recoverable else "fatal",
            evt.error,
        )

    def disconnect(self, evt: Disconnected) -> None:
        if evt.error is not None or evt.code is not None:
            logger.warning("Slack ~ disconnected (code={}): {}", evt.code, evt.error)
        else:
            logger.info("Slack ~ disconnected")

    def connection_opened(self, evt: object) -> None:
        logger.info("Slack ~ connection open")

    def message(self, evt: MessageEvent) -> None:
        logger.debug("Slack ~ received a message in {}", evt.channel_id)

    def history(self, evt: object) -> None:
        logger.debug("Slack ~ history search ready")

    def close(self) -> None:
        for sub in self._subscriptions:
            self._bus.unsubscribe(sub)
        self._subscriptions.clear()
