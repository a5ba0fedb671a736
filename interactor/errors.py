from __future__ import annotations


class TransportError(Exception):
    """Base class for errors raised or reported by the transport."""
    pass


class TransportConnectionError(TransportError):
    """Raised when a connection attempt fails before the socket opens."""

    def __init__(self, message: str, address: str | None = None) -> None:
        super().__init__(message)
        self.address = address


class InvalidStateError(TransportError):
    """Raised when an operation is not allowed in the current connection state."""
    pass
