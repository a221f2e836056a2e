#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import json
from dataclasses import replace
from pathlib import Path
from typing import Optional

import aioconsole
import typer
from rich.console import Console
from rich.table import Table

from shared.config import ConfigError, SessionConfig, load_config
from shared.log import configure_root_logging, get_logger
from shared.utils import normalize_server
from shared.wire import ProtocolError, create_event
from .backoff import ExponentialBackoff
from .palette import Palette
from .ws_client import ChatSession

app = typer.Typer(help="Emoji relay client")
console = Console()
logger = get_logger(__name__)

HELP = "/pick, /pick <n>, /name <name>, /status, /quit; anything else is sent as-is"


def _session_config(config: Optional[Path], server: Optional[str], name: Optional[str]) -> SessionConfig:
    try:
        url = normalize_server(server) if server else None
        _, session_config = load_config(config, session_overrides={"url": url, "display_name": name})
    except (ConfigError, ValueError) as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(code=2)
    return session_config


def palette_table(palette: Palette) -> Table:
    table = Table(title="Pick an emoji", show_header=False)
    for _ in range(palette.columns):
        table.add_column(justify="center")
    for row in palette.rows():
        cells = [f"[dim]{n}[/] {glyph}" for n, glyph in row]
        table.add_row(*cells)
    return table


async def _read_line(session: ChatSession) -> Optional[str]:
    """Next input line, or None if the connection dropped first."""
    reader = asyncio.ensure_future(aioconsole.ainput(": "))
    waiter = asyncio.ensure_future(session.wait_disconnected())
    try:
        done, _ = await asyncio.wait({reader, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if reader in done:
        return reader.result()
    reader.cancel()
    return None


@app.command()
def chat(
    server: Optional[str] = typer.Option(None, help="Relay URL or host:port (default ws://localhost:1337/)"),
    name: Optional[str] = typer.Option(None, help="Display name attached to sent emoji"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    reconnect: bool = typer.Option(False, "--reconnect/--no-reconnect", help="Redial with exponential backoff when the relay drops"),
    log_level: str = typer.Option("WARNING", help="DEBUG, INFO, WARNING or ERROR"),
):
    """Interactive session: show received emoji, send picked ones."""
    configure_root_logging(log_level)
    session_config = _session_config(config, server, name)
    code = asyncio.run(_chat_loop(session_config, reconnect))
    raise typer.Exit(code=code)


async def _chat_loop(session_config: SessionConfig, reconnect: bool) -> int:
    palette = Palette()
    policy = ExponentialBackoff(max_attempts=None, jitter=0.2)

    async with ChatSession(session_config) as session:
        def on_connected() -> None:
            console.print(f"[bold green]Connected[/] to {session.config.url} as [bold]{session.display_name}[/]")

        def on_disconnected() -> None:
            console.print("[red]Disconnected from relay[/]")

        def on_message(author: str, text: str) -> None:
            console.print(f"{text}  [dim]from[/] [bold cyan]{author}[/]")

        session.on_connected = on_connected
        session.on_disconnected = on_disconnected
        session.on_message = on_message

        if not await session.connect():
            if not reconnect or not await session.reconnect(policy):
                return 1
        console.print(f"[dim]{HELP}[/]")

        while True:
            try:
                line = await _read_line(session)
            except (EOFError, KeyboardInterrupt):
                break
            if line is None:
                if reconnect and await session.reconnect(policy):
                    continue
                return 1
            line = line.strip()
            if not line:
                continue
            if line in {"/quit", "/exit"}:
                break
            if line == "/help":
                console.print(HELP)
                continue
            if line == "/pick":
                console.print(palette_table(palette))
                continue
            if line.startswith("/pick "):
                choice = line[len("/pick "):].strip()
                emoji = palette.parse(choice)
                if emoji is None:
                    console.print(f"Usage: /pick <1-{len(palette)}>")
                    continue
                await session.send(emoji)
                continue
            if line.startswith("/name "):
                new_name = line[len("/name "):].strip()
                if new_name:
                    session.display_name = new_name
                    console.print(f"Now sending as [bold]{new_name}[/]")
                continue
            if line == "/status":
                console.print(f"{session.state.value} {session.config.url} as {session.display_name}")
                continue
            if not await session.send(line):
                console.print("[yellow]Not sent[/]")
    return 0


@app.command()
def send(
    emoji: str = typer.Argument(..., help="Emoji (or any text) to send"),
    server: Optional[str] = typer.Option(None, help="Relay URL or host:port"),
    name: Optional[str] = typer.Option(None, help="Display name"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
):
    """Connect, send one emoji and exit."""
    session_config = _session_config(config, server, name)
    # give the frame a moment to flush before the close aborts the socket
    session_config = replace(session_config, close_timeout=max(session_config.close_timeout, 1.0))

    async def send_once() -> bool:
        async with ChatSession(session_config) as session:
            if not await session.connect():
                return False
            return await session.send(emoji)

    if not asyncio.run(send_once()):
        console.print("[red]Not sent[/]")
        raise typer.Exit(code=1)
    console.print(f"Sent {emoji}")


@app.command()
def envelope(
    text: str = typer.Argument(..., help="Emoji to wrap"),
    author: str = typer.Option("guest", help="Author display name"),
):
    """Print the wire frame for an author/emoji pair and exit."""
    try:
        event = create_event(author, text)
    except ProtocolError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(code=2)
    console.print(json.dumps(event.to_dict(), indent=2, ensure_ascii=False))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
