"""Slack relay: one upstream connection per token, fanned out to many consumers."""

__version__ = "0.1.0"
