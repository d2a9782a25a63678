"""Relay domain exceptions."""

from __future__ import annotations


class RelayError(Exception):
    """Base for relay domain errors."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, object] | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.original_error = original_error


class RelayConfigurationError(RelayError):
    """Config validation or load failure."""


class InvalidToken(RelayError):
    """Credential token missing or blank. Usage error; never retried."""


class NotConnected(RelayError):
    """Send attempted while the upstream connection is not open."""


class SearchUnavailable(RelayError):
    """Search attempted while the upstream connection is not open."""


class RelayTimeout(RelayError):
    """Upstream call did not complete within the request timeout."""


class MalformedPayload(RelayError):
    """A single event or inbound message could not be interpreted."""


class TransportError(RelayError):
    """Upstream transport call failed; see original_error."""
