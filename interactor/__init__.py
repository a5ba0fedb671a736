"""Authenticated, reconnectable channel messaging over WebSocket."""

from shared.config import CLIENT_VERSION as __version__, TransportConfig

from .errors import InvalidStateError, TransportConnectionError, TransportError
from .socket import ReadyState, Socket, WebsocketsSocket
from .transport import ConnectionState, SendResult, WebsocketTransport

__all__ = [
    "ConnectionState",
    "InvalidStateError",
    "ReadyState",
    "SendResult",
    "Socket",
    "TransportConfig",
    "TransportConnectionError",
    "TransportError",
    "WebsocketTransport",
    "WebsocketsSocket",
    "__version__",
]
