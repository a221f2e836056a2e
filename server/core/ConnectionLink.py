from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Dict, Optional

import websockets

from server.identity.ids import display_name_for, generate_connection_id
from shared.log import get_logger

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    """Liveness of one relay connection. Only OPEN links receive broadcasts."""
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class ConnectionLink:
    """Wrapper around a WebSocket connection with relay metadata"""

    def __init__(self, websocket: websockets.ServerConnection, connection_id: Optional[str] = None):
        self.websocket = websocket
        self.connection_id = connection_id or generate_connection_id()
        self.display_name = display_name_for(self.connection_id)
        self.state = ConnectionState.CONNECTING
        self.connected_at: float = time.monotonic()
        self.last_seen: float = self.connected_at

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def remote_address(self) -> Any:
        return getattr(self.websocket, "remote_address", None)

    def log_extra(self) -> Dict[str, str]:
        return {"connection_id": self.connection_id}

    async def send_text(self, text: str, timeout: float) -> None:
        """
        Write one text frame, bounded by ``timeout`` seconds.

        Unlike ``close`` this propagates failures (ConnectionClosed,
        asyncio.TimeoutError, OSError): the relay treats them as the peer
        having gone away.
        """
        await asyncio.wait_for(self.websocket.send(text), timeout=timeout)
        logger.debug("Sent %d chars to %s", len(text), self.display_name, extra=self.log_extra())

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        """Close the WebSocket connection"""
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSING
        try:
            await self.websocket.close(code=code, reason=reason or "")
        except Exception as e:
            logger.error(f"Error closing connection: {e}", extra=self.log_extra())
        finally:
            self.state = ConnectionState.CLOSED

    def describe(self) -> Dict[str, Any]:
        remote = self.remote_address
        return {
            "display_name": self.display_name,
            "state": self.state.value,
            "remote_address": list(remote[:2]) if isinstance(remote, tuple) else remote,
            "last_seen": self.last_seen,
        }

    def __repr__(self) -> str:
        return f"ConnectionLink({self.display_name}, {self.state.value})"
