"""Node host: builds consumers from config and routes their inputs and outputs."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from typing import Any, TextIO

from loguru import logger

from slackrelay.config import Config, ConsumerConfig
from slackrelay.consumers import Auditor, Consumer, HistorySearch, OutputRecord, Speaker, Status
from slackrelay.core.errors import MalformedPayload, RelayConfigurationError, RelayError
from slackrelay.gateway.bus import Bus
from slackrelay.gateway.registry import ConnectionRegistry

NODE_TYPES: dict[str, type[Consumer]] = {
    "slackrelay-speaker": Speaker,
    "slackrelay-auditor": Auditor,
    "slackrelay-history": HistorySearch,
    "speaker": Speaker,
    "auditor": Auditor,
    "history": HistorySearch,
}


class NodeHost:
    """Owns the consumer nodes declared in config.

    Outputs go to ``out`` as JSON lines tagged with the node id; Speaker input
    arrives as JSON lines ``{"node": id, "payload": ..., "channel": {"id": ...}}``.
    """

    def __init__(
        self,
        config: Config,
        registry: ConnectionRegistry,
        bus: Bus,
        *,
        out: TextIO | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._bus = bus
        self._out = out or sys.stdout
        self._nodes: dict[str, Consumer] = {}

    @property
    def nodes(self) -> dict[str, Consumer]:
        return dict(self._nodes)

    def load(self) -> int:
        """Create every configured node. Invalid nodes are logged and skipped."""
        self._registry.request_timeout = self._config.request_timeout_seconds
        for item in self._config.nodes:
            node_cfg = ConsumerConfig.from_dict(item)
            try:
                self._nodes[node_cfg.id] = self._create(node_cfg)
            except RelayError as exc:
                logger.error("Node {} ({}) not started: {}", node_cfg.id, node_cfg.type, exc)
        logger.info("Host: {} of {} nodes running", len(self._nodes), len(self._config.nodes))
        return len(self._nodes)

    def _create(self, node_cfg: ConsumerConfig) -> Consumer:
        cls = NODE_TYPES.get(node_cfg.type)
        if cls is None:
            raise RelayConfigurationError(
                f"unknown node type {node_cfg.type!r}",
                code="unknown_node_type",
                details={"id": node_cfg.id},
            )
        kwargs: dict[str, Any] = {}
        if cls is HistorySearch:
            kwargs["dedup_ttl"] = self._config.history_dedup_ttl_seconds
        return cls(
            node_cfg,
            registry=self._registry,
            bus=self._bus,
            on_output=self._output(node_cfg.id),
            on_status=self._status(node_cfg.id),
            on_error=self._error(node_cfg.id),
            **kwargs,
        )

    def _output(self, node_id: str) -> Callable[[OutputRecord], None]:
        def write(record: OutputRecord) -> None:
            line = json.dumps({"node": node_id, **record.to_dict()}, default=str)
            self._out.write(line + "\n")
            self._out.flush()

        return write

    def _status(self, node_id: str) -> Callable[[Status], None]:
        def show(status: Status) -> None:
            log = logger.info if status.level == "ok" else logger.warning
            log("[{}] {}", node_id, status.label)

        return show

    def _error(self, node_id: str) -> Callable[[BaseException], None]:
        def report(exc: BaseException) -> None:
            logger.error("[{}] {}: {}", node_id, type(exc).__name__, exc)

        return report

    async def dispatch(self, line: str) -> bool:
        """Route one JSON input line to its Speaker node."""
        line = line.strip()
        if not line:
            return False
        try:
            msg = json.loads(line)
        except ValueError as exc:
            logger.warning("Ignoring input that is not JSON: {}", exc)
            return False
        if not isinstance(msg, dict):
            logger.warning("Ignoring input that is not an object")
            return False
        node = self._nodes.get(str(msg.get("node", "")))
        if not isinstance(node, Speaker):
            self._error(str(msg.get("node", "?")))(
                MalformedPayload("input targets no speaker node", code="unknown_node")
            )
            return False
        return await node.receive(msg)

    async def close(self) -> None:
        """Close every node, then wait for their background work to settle."""
        nodes = list(self._nodes.values())
        self._nodes.clear()
        for node in nodes:
            node.close()
        for node in nodes:
            await node.wait_idle()
