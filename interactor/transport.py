from __future__ import annotations
import asyncio
import inspect
import json
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from shared.config import TransportConfig
from shared.crypto.cipher import cipher_message
from shared.envelope import Envelope, MalformedEnvelopeError
from shared.events import EventBus, Listener
from shared.log import get_logger
from shared.system import get_system_metadata

from .errors import InvalidStateError, TransportConnectionError
from .socket import ReadyState, Socket, WebsocketsSocket

logger = get_logger(__name__)

NORMAL_CLOSE = 1000
FORCED_CLOSE = 400
DISCONNECT_REASON = "Disconnecting"

# event names the transport emits itself, never a channel
LIFECYCLE_EVENTS = frozenset({"close", "error"})

HEADER_PUBLIC_KEY = "X-PUBLIC-KEY"
HEADER_AUTH_DATA = "X-AUTH-DATA"
HEADER_SERVER_NAME = "X-SERVER-NAME"
HEADER_CLIENT_VERSION = "X-CLIENT-VERSION"

SocketFactory = Callable[[str, Dict[str, str], bool], Socket]
MetadataProvider = Callable[[], Dict[str, Any]]
CipherFunc = Callable[[str, str], str]
ResultCallback = Callable[[Optional[BaseException]], Any]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SendResult(Enum):
    SENT = "sent"
    INVALID = "invalid"              # missing channel or data
    NOT_CONNECTED = "not_connected"
    FAILED = "failed"                # socket write raised


class _ConnectAttempt:
    """One-shot completion of a connect() call"""

    def __init__(self, transport: 'WebsocketTransport', generation: int, address: str,
                 future: asyncio.Future, on_result: Optional[ResultCallback]) -> None:
        self.transport = transport
        self.generation = generation
        self.address = address
        self.future = future
        self.on_result = on_result
        self.resolved = False

    def resolve(self, error: Optional[BaseException] = None) -> None:
        if self.resolved:
            return
        self.resolved = True
        if not self.future.done():
            if error is None:
                self.future.set_result(None)
            else:
                self.future.set_exception(error)
        if self.on_result is not None:
            try:
                result = self.on_result(error)
            except Exception:
                logger.exception("connect() result callback failed", extra={"address": self.address})
                return
            if inspect.isawaitable(result):
                self.transport._track(result)


class WebsocketTransport:
    """
    Authenticated, reconnectable channel messaging over a single WebSocket.

    The transport owns at most one socket. Each ``connect`` installs a fresh
    socket tagged with a new generation number; signals from sockets of an
    older generation are dropped. Lifecycle events (``close``, ``error``) and
    one event per inbound channel are published on an internal ``EventBus``
    that owners subscribe to with :meth:`on`, :meth:`once` and :meth:`off`.
    Channel patterns are ``:`` delimited and accept ``*`` / ``**`` wildcards.
    """

    def __init__(
        self,
        config: TransportConfig,
        metadata_provider: Optional[MetadataProvider] = None,
        *,
        cipher: CipherFunc = cipher_message,
        socket_factory: SocketFactory = WebsocketsSocket,
    ) -> None:
        self.config = config
        self._metadata_provider = metadata_provider or partial(get_system_metadata, config)
        self._cipher = cipher
        self._socket_factory = socket_factory
        self._events = EventBus()
        self._socket: Optional[Socket] = None
        self._attempt: Optional[_ConnectAttempt] = None
        self._address: Optional[str] = None
        self._state = ConnectionState.DISCONNECTED
        self._generation = 0
        self._background_tasks: Set[asyncio.Future] = set()

    # ------------------------------------------------------------------
    # Subscription surface
    # ------------------------------------------------------------------

    def on(self, event: str, listener: Listener) -> Listener:
        return self._events.on(event, listener)

    def once(self, event: str, listener: Listener) -> Listener:
        return self._events.once(event, listener)

    def off(self, event: str, listener: Optional[Listener] = None) -> None:
        self._events.off(event, listener)

    def on_any(self, listener: Listener) -> Listener:
        """Subscribe to every event; called as ``listener(event, *args)``"""
        return self._events.on_any(listener)

    def off_any(self, listener: Optional[Listener] = None) -> None:
        self._events.off_any(listener)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def address(self) -> Optional[str]:
        """Last address passed to connect, kept across disconnects"""
        return self._address

    @property
    def generation(self) -> int:
        return self._generation

    def is_connected(self) -> bool:
        return (
            self._state is ConnectionState.CONNECTED
            and self._socket is not None
            and self._socket.ready_state is ReadyState.OPEN
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def build_auth_headers(self) -> Dict[str, str]:
        """Handshake headers proving possession of the secret key"""
        metadata = self._metadata_provider()
        token = self._cipher(json.dumps(metadata), self.config.secret_key)
        return {
            HEADER_PUBLIC_KEY: self.config.public_key,
            HEADER_AUTH_DATA: token,
            HEADER_SERVER_NAME: self.config.machine_name,
            HEADER_CLIENT_VERSION: str(self.config.client_version),
        }

    def connect(self, address: str, on_result: Optional[ResultCallback] = None) -> asyncio.Future:
        """
        Open a new authenticated connection to ``address``.

        Returns a future that completes on the first ``open`` (result ``None``)
        or the first ``error`` (exception ``TransportConnectionError``).
        ``on_result`` is called exactly once with ``None`` or that error.

        Raises:
            InvalidStateError: if a connection is already open or in progress
        """
        if self._state is not ConnectionState.DISCONNECTED:
            raise InvalidStateError(f"cannot connect while {self._state.value}")

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        # an ignored failed future must not warn at garbage collection
        future.add_done_callback(lambda f: f.cancelled() or f.exception())

        self._release_socket()
        self._generation += 1
        self._address = address
        attempt = _ConnectAttempt(self, self._generation, address, future, on_result)
        self._attempt = attempt
        log_ctx = {"address": address, "generation": attempt.generation}

        try:
            headers = self.build_auth_headers()
        except Exception as exc:
            logger.error("Could not build auth headers: %s", exc, extra=log_ctx)
            error = TransportConnectionError(f"could not build auth headers: {exc}", address)
            error.__cause__ = exc
            attempt.resolve(error)
            return future

        socket = self._socket_factory(address, headers, self.config.compress)
        socket.on("open", partial(self._on_open, attempt))
        socket.on("error", partial(self._on_socket_error, attempt))
        socket.on("close", partial(self._on_close, attempt))
        socket.on("message", partial(self._on_message, attempt))

        self._socket = socket
        self._state = ConnectionState.CONNECTING
        logger.info("Connecting", extra=log_ctx)
        socket.open()
        return future

    def disconnect(self) -> None:
        """Request a graceful close; the ``close`` event follows asynchronously"""
        if not self.is_connected():
            logger.debug("disconnect() ignored while %s", self._state.value)
            return
        logger.info("Disconnecting", extra={"address": self._address, "generation": self._generation})
        self._socket.close(NORMAL_CLOSE, DISCONNECT_REASON)

    def reconnect(self, address: Optional[str] = None,
                  on_result: Optional[ResultCallback] = None) -> asyncio.Future:
        """
        Drop the current connection and connect again.

        Raises:
            InvalidStateError: if no address is given and none was used before
        """
        address = address or self._address
        if not address:
            raise InvalidStateError("reconnect() needs an address, none was used before")

        self.disconnect()
        self._release_socket()
        return self.connect(address, on_result)

    async def close(self) -> None:
        """Close the connection, or abort a pending one, and wait for the socket to finish"""
        socket = self._socket
        if socket is not None:
            if socket.ready_state in (ReadyState.CONNECTING, ReadyState.OPEN):
                socket.close(NORMAL_CLOSE, DISCONNECT_REASON)
            await socket.wait_closed()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send(self, channel: str, data: Any) -> SendResult:
        """
        Publish ``data`` on ``channel``.

        Never raises: skipped and failed writes are logged and reported
        through the returned ``SendResult``.
        """
        if not channel or data is None:
            logger.debug("Trying to send message without all necessary fields")
            return SendResult.INVALID
        if not self.is_connected():
            logger.debug("Trying to send data while not connected", extra={"channel": channel})
            return SendResult.NOT_CONNECTED

        envelope = Envelope(version=self.config.protocol_version, channel=channel, payload=data)
        try:
            frame = envelope.to_json()
        except (TypeError, ValueError) as exc:
            logger.error("Payload is not JSON serializable: %s", exc, extra={"channel": channel})
            return SendResult.INVALID

        logger.debug("Sending packet", extra={"channel": channel})
        try:
            await self._socket.send(frame)
        except Exception as exc:
            # no backlog, the packet is lost
            logger.error("Failed to send packet: %s", exc, extra={"channel": channel})
            return SendResult.FAILED
        return SendResult.SENT

    async def ping(self, data: Any = None) -> None:
        """Send a ping control frame; failures are emitted as ``error`` events"""
        logger.debug("Sending ping request to remote")
        socket = self._socket
        if socket is None:
            await self._emit("error", InvalidStateError("cannot ping without a socket"))
            return
        try:
            await socket.ping("" if data is None else json.dumps(data))
        except Exception as exc:
            logger.warning("Ping failed: %s", exc)
            await self._emit("error", exc)

    # ------------------------------------------------------------------
    # Socket signals
    # ------------------------------------------------------------------

    def _is_stale(self, attempt: _ConnectAttempt, signal: str) -> bool:
        if attempt.generation != self._generation:
            logger.debug("Ignoring %s from superseded socket", signal,
                         extra={"generation": attempt.generation})
            return True
        return False

    async def _on_open(self, attempt: _ConnectAttempt) -> None:
        if self._is_stale(attempt, "open") or attempt.resolved:
            return
        self._state = ConnectionState.CONNECTED
        logger.info("Connected", extra={"address": attempt.address, "generation": attempt.generation})
        attempt.resolve(None)

    async def _on_socket_error(self, attempt: _ConnectAttempt, error: BaseException) -> None:
        if self._is_stale(attempt, "error"):
            return
        if not attempt.resolved:
            self._state = ConnectionState.DISCONNECTED
            logger.warning("Connection failed: %s", error,
                           extra={"address": attempt.address, "generation": attempt.generation})
            failure = TransportConnectionError(f"connection to {attempt.address} failed: {error}", attempt.address)
            failure.__cause__ = error
            attempt.resolve(failure)
            return
        await self._on_error(error)

    async def _on_error(self, error: BaseException) -> None:
        # never leave a half-open socket behind an error
        if self.is_connected():
            self._socket.close(FORCED_CLOSE, str(error))
        self._state = ConnectionState.DISCONNECTED
        logger.error("Transport error: %s", error, extra={"generation": self._generation})
        await self._emit("error", error)

    async def _on_close(self, attempt: _ConnectAttempt, code: int, reason: str) -> None:
        if self._is_stale(attempt, "close"):
            return
        # tear down before resolving, on_result may already connect again
        self._state = ConnectionState.DISCONNECTED
        if self._socket is not None:
            self._socket.remove_all_listeners()
            self._socket = None
        if not attempt.resolved:
            attempt.resolve(TransportConnectionError(
                f"connection to {attempt.address} closed before open ({code})", attempt.address))
        logger.info("Connection closed (%s) %s", code, reason,
                    extra={"address": attempt.address, "generation": attempt.generation})
        await self._emit("close", code, reason)

    async def _on_message(self, attempt: _ConnectAttempt, raw: Any) -> None:
        if self._is_stale(attempt, "message"):
            return
        try:
            envelope = Envelope.from_json(raw)
        except MalformedEnvelopeError as exc:
            logger.warning("Received message without all necessary fields: %s", exc)
            return
        await self._emit(envelope.channel, envelope.payload)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _emit(self, event: str, *args: Any) -> None:
        for pending in self._events.emit(event, *args):
            try:
                await pending
            except Exception:
                logger.exception("Async listener for %r failed", event)

    def _release_socket(self) -> None:
        """Detach the current socket from this transport and ask it to close"""
        socket, attempt = self._socket, self._attempt
        self._socket = None
        self._state = ConnectionState.DISCONNECTED
        if attempt is not None and not attempt.resolved:
            attempt.resolve(TransportConnectionError(
                f"connection attempt to {attempt.address} was superseded", attempt.address))
        if socket is None:
            return
        socket.remove_all_listeners()
        if socket.ready_state in (ReadyState.CONNECTING, ReadyState.OPEN):
            socket.close(NORMAL_CLOSE, DISCONNECT_REASON)

    def _track(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
