"""Upstream adapters. Connection wraps any Transport; SlackTransport is the real one."""

from slackrelay.adapters.base import Transport, TransportHandler
from slackrelay.adapters.connection import Connection

__all__ = ["Connection", "Transport", "TransportHandler"]
