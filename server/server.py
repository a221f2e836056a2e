#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import time
from contextlib import suppress
from http import HTTPStatus
from pathlib import Path
from typing import Any, Dict, Optional, Set, Union
from urllib.parse import urlsplit

import typer
import websockets
from websockets.http11 import Request, Response

from server.core.ConnectionLink import ConnectionLink, ConnectionState
from server.core.ConnectionTable import ConnectionTable
from shared.config import ConfigError, RelayConfig, load_config
from shared.log import configure_root_logging, get_logger, log_event
from shared.wire import Event, ProtocolError

# Configure Logging
logger = get_logger(__name__)


class RelayServer:
    """
    Accepts WebSocket connections on one path, validates inbound chat
    events and fans each valid one out to every other open connection.
    """

    def __init__(self, config: Optional[RelayConfig] = None, **overrides: Any):
        if config is None:
            config = RelayConfig(**overrides)
        elif overrides:
            raise TypeError("pass either a RelayConfig or keyword overrides, not both")
        self.config = config
        self.connections = ConnectionTable()
        self._background_tasks: Set[asyncio.Task] = set()
        self._server: Optional[websockets.Server] = None
        self._stopping: Optional[asyncio.Future] = None
        self._ready = asyncio.Event()
        self.bound_port: Optional[int] = None
        self.stats: Dict[str, int] = {
            "accepted": 0,
            "rejected": 0,
            "broadcast": 0,
            "delivered": 0,
            "dropped": 0,
            "evicted": 0,
        }

        logger.info(f"Initialized relay for ws://{config.host}:{config.port}{config.path}")

    def _track_background_task(self, task: asyncio.Task) -> None:
        """Keep a strong reference to background tasks until completion."""
        self._background_tasks.add(task)

        def _discard(_task: asyncio.Task) -> None:
            self._background_tasks.discard(_task)

        task.add_done_callback(_discard)

    async def start_server(self) -> None:
        """Start the WebSocket server and serve until stop() or cancellation"""
        logger.info(f"Starting relay on {self.config.host}:{self.config.port}")

        loop = asyncio.get_running_loop()
        self._stopping = loop.create_future()
        async with websockets.serve(
            self.handle_connection,
            self.config.host,
            self.config.port,
            subprotocols=[self.config.subprotocol],
            process_request=self._check_request,
            max_size=self.config.max_message_size,
            ping_interval=self.config.ping_interval,
            ping_timeout=self.config.ping_timeout,
        ) as server:
            self._server = server
            sockets = list(server.sockets)
            self.bound_port = sockets[0].getsockname()[1] if sockets else self.config.port
            logger.info(f"Relay listening on ws://{self.config.host}:{self.bound_port}{self.config.path}")
            self._ready.set()
            try:
                await self._stopping
            except asyncio.CancelledError:
                logger.info("Relay task cancelled")
                raise
            finally:
                await self._shutdown()
                self._ready.clear()
                self._server = None

    async def wait_ready(self, timeout: float = 5.0) -> None:
        """Block until start_server() is accepting connections."""
        await asyncio.wait_for(self._ready.wait(), timeout=timeout)

    async def stop(self) -> None:
        """Ask a running start_server() to shut down."""
        if self._stopping is not None and not self._stopping.done():
            self._stopping.set_result(None)

    async def _shutdown(self) -> None:
        links = await self.connections.drain()
        if links:
            logger.info(f"Closing {len(links)} connection(s)")
            await asyncio.gather(
                *(link.close(code=1001, reason="Relay shutting down") for link in links),
                return_exceptions=True,
            )
        for task in list(self._background_tasks):
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    def _check_request(self, connection: websockets.ServerConnection, request: Request) -> Optional[Response]:
        """Reject upgrades on any path other than the configured one"""
        path = urlsplit(request.path).path or "/"
        if path != self.config.path:
            self.stats["rejected"] += 1
            logger.warning(f"Rejected upgrade on {path!r} from {connection.remote_address}")
            return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")
        return None

    async def handle_connection(self, websocket: websockets.ServerConnection) -> None:
        """
        Handle one accepted WebSocket connection.

        The upgrade handshake has already succeeded when this runs; every
        frame is handed to on_message() and the link is dropped from the
        active set on every exit path.
        """
        try:
            link = await self.accept_connection(websocket)
        except Exception as e:
            logger.error(f"Could not accept connection from {websocket.remote_address}: {e}")
            with suppress(Exception):
                await websocket.close(code=1011, reason="Relay unavailable")
            return

        try:
            async for message in websocket:
                await self.on_message(link, message)
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection {link.display_name} closed", extra=link.log_extra())
        except Exception as e:
            logger.error(f"Error handling connection {link.display_name}: {e}", extra=link.log_extra())
        finally:
            await self.on_disconnect(link)
            link.state = ConnectionState.CLOSED

    async def accept_connection(self, websocket: websockets.ServerConnection) -> ConnectionLink:
        """Assign an id and a display name, then register the link as open"""
        link = ConnectionLink(websocket)
        await self.connections.register(link)
        self.stats["accepted"] += 1
        logger.info(
            f"New connection {link.display_name} from {link.remote_address} ({len(self.connections)} open)",
            extra=link.log_extra(),
        )
        return link

    async def on_message(self, link: ConnectionLink, raw: Union[str, bytes]) -> Optional[Event]:
        """
        Validate one inbound frame and broadcast it.

        Invalid frames are logged and dropped; the sender is never told and
        its connection stays open. Returns the broadcast Event, if any.
        """
        link.last_seen = time.monotonic()

        if isinstance(raw, (bytes, bytearray)):
            logger.debug(f"Ignoring {len(raw)}-byte binary frame", extra=link.log_extra())
            return None

        try:
            event = Event.from_json(raw)
        except ProtocolError as e:
            self.stats["dropped"] += 1
            logger.warning(f"Dropped frame from {link.display_name}: {e}", extra=link.log_extra())
            return None

        await self.broadcast(event, excluding=link)
        return event

    async def broadcast(self, event: Event, excluding: Optional[ConnectionLink] = None) -> int:
        """
        Write ``event`` to every open connection except ``excluding``.

        Peers are written concurrently, each bounded by send_timeout. A peer
        whose write fails or times out is removed and closed in the
        background. Returns the number of successful deliveries.
        """
        peers = await self.connections.snapshot(excluding=excluding)
        self.stats["broadcast"] += 1
        if not peers:
            log_event(logger, "debug", "No peers to broadcast to", event=event)
            return 0

        wire = event.to_json()
        results = await asyncio.gather(
            *(peer.send_text(wire, self.config.send_timeout) for peer in peers),
            return_exceptions=True,
        )

        delivered = 0
        for peer, result in zip(peers, results):
            if isinstance(result, BaseException):
                reason = str(result) or type(result).__name__
                log_event(logger, "warning", f"Write to {peer.display_name} failed ({reason}); removing",
                          event=event, connection_id=peer.connection_id)
                await self._evict(peer)
            else:
                delivered += 1

        self.stats["delivered"] += delivered
        log_event(logger, "info", f"Broadcast to {delivered}/{len(peers)} peer(s)", event=event,
                  connection_id=excluding.connection_id if excluding else None)
        return delivered

    async def _evict(self, link: ConnectionLink) -> None:
        if await self.on_disconnect(link):
            self.stats["evicted"] += 1
        task = asyncio.create_task(link.close(code=1011, reason="Write failed"))
        self._track_background_task(task)

    async def on_disconnect(self, link: ConnectionLink) -> bool:
        """Remove ``link`` from the active set. Safe to call more than once."""
        removed = await self.connections.remove(link)
        if removed:
            logger.info(
                f"Removed {link.display_name} ({len(self.connections)} open)",
                extra=link.log_extra(),
            )
        return removed

    def get_status(self) -> Dict[str, Any]:
        """Expose internal status for health/diagnostics."""
        return {
            "endpoint": {
                "host": self.config.host,
                "port": self.bound_port or self.config.port,
                "path": self.config.path,
                "subprotocol": self.config.subprotocol,
            },
            "running": self._server is not None,
            "open_connections": len(self.connections),
            "connections": {link.connection_id: link.describe() for link in self.connections.values()},
            "stats": dict(self.stats),
        }


app = typer.Typer(help="Emoji relay server")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Interface to bind (default localhost)"),
    port: Optional[int] = typer.Option(None, help="TCP port (default 1337)"),
    path: Optional[str] = typer.Option(None, help="WebSocket path (default /)"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    log_level: str = typer.Option("INFO", help="DEBUG, INFO, WARNING or ERROR"),
):
    """Run the relay until interrupted."""
    configure_root_logging(log_level)
    try:
        relay_config, _ = load_config(config, relay_overrides={"host": host, "port": port, "path": path})
    except ConfigError as e:
        logger.error(str(e))
        raise typer.Exit(code=2)

    relay = RelayServer(relay_config)
    try:
        asyncio.run(relay.start_server())
    except KeyboardInterrupt:
        logger.info("Relay stopped")


def main() -> None:
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
