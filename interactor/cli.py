#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import json
import os
import time
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import typer
from rich.console import Console
from rich.pretty import Pretty

from shared.config import ConfigError, TransportConfig
from shared.events import channel_matches
from shared.log import get_logger
from .errors import TransportConnectionError
from .transport import LIFECYCLE_EVENTS, SendResult, WebsocketTransport

app = typer.Typer(help="Interactor transport client")
console = Console()
logger = get_logger(__name__)


def _default_endpoint() -> str:
    return os.getenv("INTERACTOR_ENDPOINT", "ws://localhost:8080/interactor")


def _load_config(path: Optional[Path]) -> TransportConfig:
    try:
        return TransportConfig.from_yaml(path) if path else TransportConfig.from_env()
    except (ConfigError, OSError) as e:
        console.print(f"[red]Invalid configuration[/]: {e}")
        raise typer.Exit(code=2)


def _parse_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        console.print(f"[red]DATA is not valid JSON[/]: {e}")
        raise typer.Exit(code=2)


def channel_printer(patterns: Sequence[str]) -> Callable[..., None]:
    """Any-event listener printing payloads of channels selected by ``patterns``"""

    def show(event: str, *args: Any) -> None:
        if event in LIFECYCLE_EVENTS or not args:
            return
        if any(channel_matches(pattern, event) for pattern in patterns):
            console.print(f"[bold cyan]{event}[/]", Pretty(args[0]))

    return show


async def _open(transport: WebsocketTransport, endpoint: str) -> None:
    try:
        await transport.connect(endpoint)
    except TransportConnectionError as e:
        console.print(f"[red]Connection failed[/]: {e}")
        raise typer.Exit(code=1)
    console.print(f"[bold green]Connected[/] to {endpoint} as {transport.config.machine_name}")


@app.command()
def listen(
    channel: List[str] = typer.Option(["**"], "--channel", "-c", help="Channel pattern to subscribe to (repeatable)"),
    endpoint: str = typer.Option(_default_endpoint(), help="WebSocket URL of the monitoring endpoint"),
    config: Optional[Path] = typer.Option(None, help="YAML config file; INTERACTOR_* env vars otherwise"),
    ping_interval: float = typer.Option(0.0, help="Seconds between keepalive pings, 0 disables"),
):
    """Connect and print every payload received on the given channels."""
    cfg = _load_config(config)

    async def main_loop() -> None:
        transport = WebsocketTransport(cfg)
        closed = asyncio.Event()

        transport.on_any(channel_printer(channel))

        def on_close(code: int, reason: str) -> None:
            console.print(f"[yellow]Connection closed[/] ({code}) {reason}")
            closed.set()

        transport.on("close", on_close)
        transport.on("error", lambda err: console.print(f"[red]Transport error[/]: {err}"))

        await _open(transport, endpoint)
        try:
            while not closed.is_set():
                if ping_interval <= 0:
                    await closed.wait()
                    break
                try:
                    await asyncio.wait_for(closed.wait(), timeout=ping_interval)
                except asyncio.TimeoutError:
                    await transport.ping({"ts": int(time.time() * 1000)})
        finally:
            await transport.close()

    try:
        asyncio.run(main_loop())
    except KeyboardInterrupt:
        console.print("[dim]Interrupted[/]")


@app.command()
def send(
    channel: str = typer.Argument(..., help="Channel to publish on"),
    data: str = typer.Argument(..., help="JSON payload"),
    endpoint: str = typer.Option(_default_endpoint(), help="WebSocket URL of the monitoring endpoint"),
    config: Optional[Path] = typer.Option(None, help="YAML config file; INTERACTOR_* env vars otherwise"),
):
    """Connect, publish one message and disconnect."""
    payload = _parse_json(data)
    cfg = _load_config(config)

    async def main_loop() -> SendResult:
        transport = WebsocketTransport(cfg)
        await _open(transport, endpoint)
        try:
            return await transport.send(channel, payload)
        finally:
            await transport.close()

    result = asyncio.run(main_loop())
    if result is not SendResult.SENT:
        console.print(f"[red]Message not sent[/]: {result.value}")
        raise typer.Exit(code=1)
    console.print(f"Sent on [bold]{channel}[/]")


@app.command()
def ping(
    data: str = typer.Argument("null", help="JSON payload carried by the ping frame"),
    endpoint: str = typer.Option(_default_endpoint(), help="WebSocket URL of the monitoring endpoint"),
    config: Optional[Path] = typer.Option(None, help="YAML config file; INTERACTOR_* env vars otherwise"),
):
    """Connect and send a single keepalive ping."""
    payload = _parse_json(data)
    cfg = _load_config(config)

    async def main_loop() -> List[BaseException]:
        transport = WebsocketTransport(cfg)
        errors: List[BaseException] = []
        transport.on("error", errors.append)
        await _open(transport, endpoint)
        try:
            await transport.ping(payload)
        finally:
            await transport.close()
        return errors

    errors = asyncio.run(main_loop())
    if errors:
        console.print(f"[red]Ping failed[/]: {errors[0]}")
        raise typer.Exit(code=1)
    console.print("Ping sent")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
