import asyncio
import json
import os
from typing import Any, List, Optional, Tuple

import pytest

# keep test runs from writing logs/interactor.log
os.environ.setdefault("INTERACTOR_LOG_DIR", "")

from interactor.socket import ReadyState, Socket
from interactor.transport import WebsocketTransport
from shared.config import TransportConfig

METADATA = {"hostname": "test-host", "cpus": 4}


class StubSocket(Socket):
    """In-memory socket; tests drive its signals with the fire_* helpers."""

    def __init__(self, address: str, headers=None, compress: bool = False) -> None:
        super().__init__(address, headers, compress)
        self.state = ReadyState.CONNECTING
        self.opened = False
        self.sent: List[str] = []
        self.pings: List[Any] = []
        self.close_calls: List[Tuple[int, str]] = []
        self.send_error: Optional[Exception] = None
        self.ping_error: Optional[Exception] = None
        self._closed = asyncio.Event()

    @property
    def ready_state(self) -> ReadyState:
        return self.state

    def open(self) -> None:
        self.opened = True

    async def send(self, data: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(data)

    async def ping(self, data) -> None:
        if self.ping_error is not None:
            raise self.ping_error
        self.pings.append(data)

    def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls.append((code, reason))
        if self.state in (ReadyState.CONNECTING, ReadyState.OPEN):
            self.state = ReadyState.CLOSING

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def fire_open(self) -> None:
        self.state = ReadyState.OPEN
        await self._fire("open")

    async def fire_message(self, raw: Any) -> None:
        if not isinstance(raw, (str, bytes)):
            raw = json.dumps(raw)
        await self._fire("message", raw)

    async def fire_error(self, exc: BaseException) -> None:
        await self._fire("error", exc)

    async def fire_close(self, code: int = 1000, reason: str = "") -> None:
        self.state = ReadyState.CLOSED
        self._closed.set()
        await self._fire("close", code, reason)


class SocketRecorder:
    """Socket factory that remembers every socket the transport created."""

    def __init__(self) -> None:
        self.sockets: List[StubSocket] = []

    def __call__(self, address: str, headers, compress: bool) -> StubSocket:
        sock = StubSocket(address, headers, compress)
        self.sockets.append(sock)
        return sock

    @property
    def last(self) -> StubSocket:
        return self.sockets[-1]


@pytest.fixture
def config() -> TransportConfig:
    return TransportConfig(public_key="pub-key", secret_key="s3cret", machine_name="test-host")


@pytest.fixture
def sockets() -> SocketRecorder:
    return SocketRecorder()


@pytest.fixture
def transport(config: TransportConfig, sockets: SocketRecorder) -> WebsocketTransport:
    return WebsocketTransport(config, metadata_provider=lambda: dict(METADATA), socket_factory=sockets)


@pytest.fixture
def open_transport(transport: WebsocketTransport, sockets: SocketRecorder):
    """Connect the transport and fire open on its socket."""

    async def _open(address: str = "ws://host/x") -> StubSocket:
        transport.connect(address)
        sock = sockets.last
        await sock.fire_open()
        return sock

    return _open
