"""
Socket seam used by the transport.

A ``Socket`` owns one underlying connection and reports its lifecycle through
four signals: ``open()``, ``message(raw)``, ``error(exc)`` and
``close(code, reason)``. Handlers may be plain or async callables; the socket
awaits each one before delivering the next signal, which keeps inbound
frames strictly ordered.
"""

from __future__ import annotations
import asyncio
import inspect
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from shared.log import get_logger

logger = get_logger(__name__)

SocketHandler = Callable[..., Any]
SIGNALS = ("open", "message", "error", "close")

# Close code reported when the peer vanished without a close frame
ABNORMAL_CLOSURE = 1006
INTERNAL_ERROR = 1011

_WIRE_CLOSE_CODES: Set[int] = {1000, 1001, 1002, 1003, 1007, 1008, 1009, 1010, 1011, 1012, 1013, 1014}


class ReadyState(IntEnum):
    CONNECTING = 0
    OPEN = 1
    CLOSING = 2
    CLOSED = 3


def wire_close_code(code: int) -> int:
    """Map an application close code to one RFC 6455 allows on the wire"""
    if code in _WIRE_CLOSE_CODES or 3000 <= code <= 4999:
        return code
    return INTERNAL_ERROR


class Socket(ABC):
    """Abstract connection primitive driven by the transport"""

    def __init__(self, address: str, headers: Optional[Mapping[str, str]] = None, compress: bool = False) -> None:
        self.address = address
        self.headers: Dict[str, str] = dict(headers or {})
        self.compress = compress
        self._handlers: Dict[str, List[SocketHandler]] = {}

    def on(self, signal: str, handler: SocketHandler) -> None:
        if signal not in SIGNALS:
            raise ValueError(f"Unknown socket signal: {signal!r}")
        self._handlers.setdefault(signal, []).append(handler)

    def remove_all_listeners(self) -> None:
        self._handlers.clear()

    async def _fire(self, signal: str, *args: Any) -> None:
        for handler in list(self._handlers.get(signal, ())):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for socket signal %r failed", signal)

    @property
    @abstractmethod
    def ready_state(self) -> ReadyState:
        ...

    @abstractmethod
    def open(self) -> None:
        """Start connecting; completion is reported through the signals"""
        ...

    @abstractmethod
    async def send(self, data: str) -> None:
        ...

    @abstractmethod
    async def ping(self, data: Union[str, bytes]) -> None:
        ...

    @abstractmethod
    def close(self, code: int = 1000, reason: str = "") -> None:
        """Request a close; the ``close`` signal fires once it completes"""
        ...

    @abstractmethod
    async def wait_closed(self) -> None:
        ...


class WebsocketsSocket(Socket):
    """
    Socket backed by the ``websockets`` asyncio client.

    Connecting, reading and closing happen in one background task per socket.
    A failed handshake fires ``error`` then ``close(1006)``, mirroring what a
    browser-style WebSocket reports.
    """

    def __init__(
        self,
        address: str,
        headers: Optional[Mapping[str, str]] = None,
        compress: bool = False,
        *,
        open_timeout: float = 10.0,
        ping_interval: Optional[float] = None,
    ) -> None:
        super().__init__(address, headers, compress)
        self.open_timeout = open_timeout
        self.ping_interval = ping_interval
        self.websocket: Optional[ClientConnection] = None
        self._task: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None
        self._close_requested = False
        self._finished = asyncio.Event()

    @property
    def ready_state(self) -> ReadyState:
        if self._finished.is_set():
            return ReadyState.CLOSED
        if self.websocket is None:
            return ReadyState.CLOSING if self._close_requested else ReadyState.CONNECTING
        state = ReadyState[self.websocket.state.name]
        if state is ReadyState.OPEN and self._close_requested:
            return ReadyState.CLOSING
        return state

    def open(self) -> None:
        if self._task is not None:
            raise RuntimeError("socket already opened")
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        try:
            await self._connect_and_read()
        except asyncio.CancelledError:
            if self.websocket is not None and self.websocket.transport is not None:
                self.websocket.transport.abort()
            raise
        finally:
            self._finished.set()

    async def _connect_and_read(self) -> None:
        try:
            self.websocket = await connect(
                self.address,
                additional_headers=self.headers,
                compression="deflate" if self.compress else None,
                open_timeout=self.open_timeout,
                ping_interval=self.ping_interval,
            )
        except Exception as exc:
            logger.debug("Handshake with %s failed: %s", self.address, exc)
            self._finished.set()
            await self._fire("error", exc)
            await self._fire("close", ABNORMAL_CLOSURE, "")
            return

        if self._close_requested:
            await self.websocket.close()
        else:
            await self._fire("open")

        try:
            async for raw in self.websocket:
                await self._fire("message", raw)
        except ConnectionClosed:
            pass
        except Exception as exc:
            await self._fire("error", exc)

        await self.websocket.wait_closed()
        code = self.websocket.close_code or ABNORMAL_CLOSURE
        reason = self.websocket.close_reason or ""
        self._finished.set()
        await self._fire("close", code, reason)

    async def send(self, data: str) -> None:
        if self.websocket is None or self.ready_state is not ReadyState.OPEN:
            raise ConnectionError(f"socket to {self.address} is not open")
        await self.websocket.send(data)

    async def ping(self, data: Union[str, bytes]) -> None:
        if self.websocket is None:
            raise ConnectionError(f"socket to {self.address} is not open")
        # the pong waiter is not awaited, keepalive is fire and forget
        await self.websocket.ping(data)

    def close(self, code: int = 1000, reason: str = "") -> None:
        if self._close_requested or self._finished.is_set():
            return
        self._close_requested = True
        if self.websocket is None:
            # still handshaking, _connect_and_read closes right after open
            return
        self._closer = asyncio.get_running_loop().create_task(
            self.websocket.close(code=wire_close_code(code), reason=reason)
        )

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        await self._finished.wait()
