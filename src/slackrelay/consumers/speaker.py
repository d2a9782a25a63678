"""Speaker: relays inbound {payload, channel: {id}} messages upstream."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from loguru import logger

from slackrelay.consumers.base import Consumer
from slackrelay.core.constants import PLACEHOLDER_NOTICE
from slackrelay.core.errors import MalformedPayload, RelayError


class Speaker(Consumer):
    """Sends each inbound message to its target channel."""

    kind = "speaker"

    async def receive(self, msg: Mapping[str, Any]) -> bool:
        """Send msg upstream. Returns True when the send went through.

        Failures are reported through the error callback, never raised.
        """
        if self.closed:
            logger.debug("{}: dropping input after close", self)
            return False

        payload = msg.get("payload")
        if payload is None or not str(payload).strip():
            payload = PLACEHOLDER_NOTICE
        text = str(payload)

        channel = msg.get("channel")
        channel_id = channel.get("id") if isinstance(channel, Mapping) else None
        if not channel_id:
            self.report_error(MalformedPayload("message has no channel id", code="missing_channel"))
            return False

        try:
            await self.connection.send(text, str(channel_id))
        except RelayError as exc:
            # Results arriving after close are discarded
            if not self.closed:
                self.report_error(exc)
            return False
        return not self.closed
