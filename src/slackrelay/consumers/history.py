"""HistorySearch: runs the configured search whenever a connection opens."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from cachetools import TTLCache
from loguru import logger

from slackrelay.consumers.base import Consumer, OutputRecord
from slackrelay.core.constants import HISTORY
from slackrelay.core.errors import RelayError
from slackrelay.events import HistoryReady, normalize_message


class HistorySearch(Consumer):
    """Searches with ``config.query`` on every history event and emits the hits.

    Joining a connection that is already open runs one search straight away.

    Hits already emitted within ``dedup_ttl`` seconds are skipped, so a
    reconnect does not replay the same results.
    """

    kind = "history"

    def __init__(self, *args: Any, dedup_ttl: int = 3600, dedup_maxsize: int = 4096, **kwargs: Any) -> None:
        self._seen: TTLCache[tuple[str | None, str | None], bool] = TTLCache(
            maxsize=dedup_maxsize,
            ttl=float(dedup_ttl),
        )
        super().__init__(*args, **kwargs)

    def topics(self) -> dict[str, Callable[[Any], None]]:
        return {HISTORY: self._on_history}

    def _on_history(self, evt: HistoryReady) -> None:
        self._schedule_search()

    def _joined_open(self) -> None:
        # The history event for this open already went out before we subscribed
        self._schedule_search()

    def _schedule_search(self) -> None:
        if not self.config.query.strip():
            logger.warning("{}: no query configured, skipping search", self)
            return
        self._spawn(self.run_search())

    async def run_search(self) -> int:
        """Search and emit accepted results. Returns how many were emitted."""
        try:
            results = await self.connection.search(self.config.query)
        except RelayError as exc:
            if not self.closed:
                self.report_error(exc)
            return 0

        emitted = 0
        for item in results:
            if self.closed:
                break
            if not isinstance(item, Mapping):
                logger.debug("{}: skipping non-message result {!r}", self, item)
                continue
            evt = normalize_message(self.token, item)
            if evt.is_deleted:
                continue
            if not self.channel_is_watched(evt.channel_id):
                continue
            key = (evt.channel_id, evt.timestamp)
            if evt.timestamp is not None and key in self._seen:
                continue
            self._seen[key] = True
            if self.emit(OutputRecord.from_message(evt)):
                emitted += 1
        logger.debug("{}: search returned {} results, emitted {}", self, len(results), emitted)
        return emitted
