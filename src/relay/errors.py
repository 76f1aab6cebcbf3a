"""
Error types raised by the relay.

Client-visible payloads are built from ``client_message`` only, so
upstream bodies and keys never reach the browser.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for relay errors."""

    client_message = "Internal relay error"


class ConfigurationError(RelayError):
    """A required server-held secret or setting is missing."""

    def __init__(self, setting: str):
        self.setting = setting
        super().__init__(f"{setting} is not configured on the server")

    @property
    def client_message(self) -> str:  # type: ignore[override]
        return str(self)


class UpstreamHandshakeError(RelayError):
    """Credential issuance or an upstream connection attempt failed."""

    def __init__(
        self,
        service: str,
        message: str,
        status: Optional[int] = None,
        details: Optional[str] = None,
    ):
        self.service = service
        self.status = status
        self.details = details
        super().__init__(f"{service}: {message}")

    @property
    def client_message(self) -> str:  # type: ignore[override]
        return f"Could not connect to {self.service}"


class ProtocolParseError(RelayError):
    """A message from any party could not be parsed."""

    def __init__(self, source: str, reason: str):
        self.source = source
        super().__init__(f"Malformed message from {source}: {reason}")


class UpstreamSocketError(RelayError):
    """An established upstream connection dropped mid-session."""

    def __init__(self, service: str, reason: str = ""):
        self.service = service
        super().__init__(f"{service} connection lost: {reason}" if reason else f"{service} connection lost")

    @property
    def client_message(self) -> str:  # type: ignore[override]
        return f"Connection to {self.service} was lost"
