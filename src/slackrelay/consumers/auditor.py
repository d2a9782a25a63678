"""Auditor: emits every watched, non-deleted inbound message."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from slackrelay.consumers.base import Consumer, OutputRecord
from slackrelay.core.constants import MESSAGE
from slackrelay.events import MessageEvent


class Auditor(Consumer):
    kind = "auditor"

    def topics(self) -> dict[str, Callable[[Any], None]]:
        return {MESSAGE: self._on_message}

    def _on_message(self, evt: MessageEvent) -> None:
        if evt.is_deleted:
            return
        if not self.channel_is_watched(evt.channel_id):
            return
        self.emit(OutputRecord.from_message(evt))
