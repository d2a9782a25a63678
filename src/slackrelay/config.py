"""Configuration: YAML + .env overlay, node definitions."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from slackrelay.core.constants import DEFAULT_REQUEST_TIMEOUT
from slackrelay.core.errors import RelayConfigurationError


def _deep_update(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_update(result[key], value)
        else:
            result[key] = value
    return result


def load_config(path: str | Path) -> dict[str, Any]:
    """Load config from YAML file. Use SafeLoader. Returns raw dict."""
    path = Path(path)
    if not path.exists():
        logger.warning("Config file not found: {}", path)
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            logger.warning("Config file {} has invalid structure (expected dict)", path)
            return {}
        return data
    except yaml.YAMLError as exc:
        logger.error("Failed to parse config {}: {}", path, exc)
        raise


def load_config_with_env(path: str | Path) -> dict[str, Any]:
    """Load config from YAML after loading .env into the process environment.

    ``SLACKRELAY_REQUEST_TIMEOUT`` overrides ``request_timeout_seconds``.
    """
    from dotenv import load_dotenv

    load_dotenv()
    data = load_config(path)
    overrides: dict[str, Any] = {}
    timeout = os.environ.get("SLACKRELAY_REQUEST_TIMEOUT")
    if timeout:
        overrides["request_timeout_seconds"] = timeout
    return _deep_update(data, overrides)


@dataclass(frozen=True)
class ConsumerConfig:
    """Immutable per-consumer settings."""

    token: str
    channels: str = ""
    query: str = ""
    id: str = ""
    type: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ConsumerConfig:
        """Build from a node definition. ``token_env`` names an env var holding the token."""
        token = data.get("token")
        if not token and data.get("token_env"):
            token = os.environ.get(str(data["token_env"]), "")
        channels = data.get("channels") or ""
        if isinstance(channels, (list, tuple)):
            channels = ",".join(str(c) for c in channels)
        return cls(
            token=str(token or ""),
            channels=str(channels),
            query=str(data.get("query") or ""),
            id=str(data.get("id") or ""),
            type=str(data.get("type") or ""),
        )


class Config:
    """Config accessor with attribute-style access for nested keys."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._data = data or {}

    def reload(self, data: dict[str, Any], *, validate: bool = True) -> None:
        """Replace config data (e.g. on SIGHUP reload). Invalid data leaves the old config in place."""
        previous = self._data
        self._data = data or {}
        if validate:
            try:
                self._validate()
            except RelayConfigurationError:
                self._data = previous
                raise
        logger.debug("Config reloaded: {} nodes", len(self.nodes))

    def _validate(self) -> None:
        """Validate config structure; raise RelayConfigurationError on failure."""
        nodes = self._data.get("nodes")
        if nodes is not None and not isinstance(nodes, list):
            raise RelayConfigurationError(
                "nodes must be a list",
                code="invalid_nodes",
                details={"type": type(nodes).__name__},
            )
        seen: set[str] = set()
        for i, item in enumerate(self.nodes):
            if not isinstance(item, dict):
                raise RelayConfigurationError(
                    f"nodes[{i}] must be a dict",
                    code="invalid_node_item",
                    details={"index": i},
                )
            if not item.get("type"):
                raise RelayConfigurationError(
                    f"nodes[{i}] missing type",
                    code="missing_node_type",
                    details={"index": i},
                )
            node_id = str(item.get("id") or "")
            if not node_id:
                raise RelayConfigurationError(
                    f"nodes[{i}] missing id",
                    code="missing_node_id",
                    details={"index": i},
                )
            if node_id in seen:
                raise RelayConfigurationError(
                    f"nodes[{i}] duplicate id {node_id!r}",
                    code="duplicate_node_id",
                    details={"index": i, "id": node_id},
                )
            seen.add(node_id)
        try:
            float(self._data.get("request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT))
        except (TypeError, ValueError) as exc:
            raise RelayConfigurationError(
                "request_timeout_seconds must be a number",
                code="invalid_timeout",
                original_error=exc,
            ) from exc

    @property
    def raw(self) -> dict[str, Any]:
        """Raw config dict."""
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Get value by dot-separated path (e.g. 'nodes.0.type')."""
        parts = key.split(".")
        obj: Any = self._data
        for part in parts:
            if isinstance(obj, dict) and part in obj:
                obj = obj[part]
            elif isinstance(obj, list) and part.isdigit() and int(part) < len(obj):
                obj = obj[int(part)]
            else:
                return default
        return obj

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    @property
    def nodes(self) -> list[dict[str, Any]]:
        """Node (consumer) definitions."""
        n = self._data.get("nodes")
        return n if isinstance(n, list) else []

    @property
    def request_timeout_seconds(self) -> float:
        """Upper bound on any single upstream send/search."""
        return float(self._data.get("request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT))

    @property
    def history_dedup_ttl_seconds(self) -> int:
        """How long HistorySearch remembers results it already emitted."""
        return int(self._data.get("history_dedup_ttl_seconds", 3600))

    @property
    def log_lifecycle(self) -> bool:
        """Whether to log every connection lifecycle event."""
        return bool(self._data.get("log_lifecycle", True))


# Global config instance (set by __main__)
cfg: Config = Config({})
