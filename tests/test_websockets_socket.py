import asyncio
import json
import socket
from http import HTTPStatus

import pytest
from websockets.asyncio.server import serve

from interactor.errors import TransportConnectionError
from interactor.socket import INTERNAL_ERROR, ReadyState, WebsocketsSocket, wire_close_code
from interactor.transport import ConnectionState, SendResult, WebsocketTransport
from shared.config import TransportConfig
from shared.crypto.cipher import decipher_message

SECRET = "integration-secret"


def make_transport() -> WebsocketTransport:
    config = TransportConfig(public_key="pub", secret_key=SECRET, machine_name="ci-runner")
    return WebsocketTransport(config, metadata_provider=lambda: {"hostname": "ci"})


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_wire_close_code():
    assert wire_close_code(1000) == 1000
    assert wire_close_code(4001) == 4001
    assert wire_close_code(400) == INTERNAL_ERROR


@pytest.mark.asyncio
async def test_round_trip_against_real_endpoint():
    inbox: asyncio.Queue = asyncio.Queue()
    handshake = {}

    async def handler(ws):
        handshake.update(ws.request.headers)
        await ws.send(json.dumps({"version": 1, "channel": "hello", "payload": {"ok": True}}))
        async for message in ws:
            await inbox.put(message)

    async with serve(handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        transport = make_transport()
        greetings: asyncio.Queue = asyncio.Queue()
        closes: asyncio.Queue = asyncio.Queue()
        transport.on("hello", greetings.put_nowait)
        transport.on("close", lambda code, reason: closes.put_nowait(code))

        await asyncio.wait_for(transport.connect(f"ws://127.0.0.1:{port}/interactor"), timeout=5)
        assert transport.is_connected() is True

        assert await asyncio.wait_for(greetings.get(), timeout=5) == {"ok": True}

        assert await transport.send("metrics", {"cpu": 10}) is SendResult.SENT
        frame = await asyncio.wait_for(inbox.get(), timeout=5)
        assert json.loads(frame) == {"version": 1, "channel": "metrics", "payload": {"cpu": 10}}

        await transport.ping({"ts": 1})

        transport.disconnect()
        assert await asyncio.wait_for(closes.get(), timeout=5) == 1000
        assert transport.state is ConnectionState.DISCONNECTED
        assert transport.is_connected() is False

    headers = {k.lower(): v for k, v in handshake.items()}
    assert headers["x-public-key"] == "pub"
    assert headers["x-server-name"] == "ci-runner"
    assert json.loads(decipher_message(headers["x-auth-data"], SECRET)) == {"hostname": "ci"}


@pytest.mark.asyncio
async def test_refused_connection_fails_connect():
    transport = make_transport()
    results = []

    with pytest.raises(TransportConnectionError):
        await asyncio.wait_for(
            transport.connect(f"ws://127.0.0.1:{free_port()}/interactor", results.append), timeout=5)

    assert len(results) == 1
    assert transport.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_rejected_handshake_fails_connect():
    def check_key(connection, request):
        if request.headers.get("X-PUBLIC-KEY") != "expected":
            return connection.respond(HTTPStatus.UNAUTHORIZED, "unknown public key\n")
        return None

    async def handler(ws):
        await ws.wait_closed()

    async with serve(handler, "127.0.0.1", 0, process_request=check_key) as server:
        port = server.sockets[0].getsockname()[1]
        transport = make_transport()

        with pytest.raises(TransportConnectionError):
            await asyncio.wait_for(transport.connect(f"ws://127.0.0.1:{port}/"), timeout=5)
        assert transport.is_connected() is False


@pytest.mark.asyncio
async def test_close_before_handshake_completes():
    sock = WebsocketsSocket(f"ws://127.0.0.1:{free_port()}/", {})
    errors = []
    sock.on("error", errors.append)

    sock.open()
    assert sock.ready_state is ReadyState.CONNECTING
    sock.close(1000, "bye")
    await asyncio.wait_for(sock.wait_closed(), timeout=5)

    assert sock.ready_state is ReadyState.CLOSED
    assert len(errors) == 1
