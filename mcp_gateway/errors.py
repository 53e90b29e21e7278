"""
Exceptions raised by the tool gateway client.

Transport failures and protocol failures are kept apart so callers can
tell "the tool server is gone" from "the tool ran and said no".
"""

from __future__ import annotations

from typing import Any


class GatewayError(RuntimeError):
    """Base class for all gateway errors."""


# ── Transport ──────────────────────────────────────────────


class TransportError(GatewayError):
    """Transport-level failure (spawn, connect, I/O)."""


class TransportStartError(TransportError):
    """The tool server could not be spawned or connected to."""


class TransportClosedError(TransportError):
    """The transport went away while a call was in flight."""


class BrokenPipeTransportError(TransportClosedError):
    """A write hit a closed stdin or socket."""


class NoConnectionError(TransportError):
    """No live transport is available to send a request on."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.details = details or {}
        super().__init__(message)


class ConnectionLostError(TransportError):
    """The connection broke while sending; recovery has been requested."""


# ── Supervisor ─────────────────────────────────────────────


class PortExhaustedError(TransportStartError):
    """Every port in the search budget was already in use."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Failed to start tool server after trying {attempts} different ports"
        )


class RestartExhaustedError(TransportError):
    """The tool server kept dying and the restart budget is spent."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Maximum restart attempts ({attempts}) reached. Giving up.")


class ClientStoppedError(GatewayError):
    """The client was stopped; it cannot be used again."""


# ── Protocol ───────────────────────────────────────────────


class ProtocolError(GatewayError):
    """The remote side sent something that is not valid JSON-RPC."""


class InvalidResponseError(ProtocolError):
    """A response carried neither ``result`` nor ``error``."""

    def __init__(self, message: str = "Invalid response from tool server"):
        super().__init__(message)


class DuplicateRequestError(GatewayError):
    """A request id was registered while a call with that id was still pending."""


class ToolError(GatewayError):
    """The tool server reported a failure for a request."""

    def __init__(self, message: str, *, code: int | None = None, data: Any = None):
        self.message = message
        self.code = code
        self.data = data
        super().__init__(message)
