from __future__ import annotations
import asyncio
import inspect
import uuid
from contextlib import suppress
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import websockets

from client.backoff import ExponentialBackoff
from shared.config import SessionConfig
from shared.log import get_logger
from shared.wire import Event, ProtocolError, create_event

logger = get_logger(__name__)


ConnectionCallback = Callable[[], Union[None, Awaitable[None]]]
MessageCallback = Callable[[str, str], Union[None, Awaitable[None]]]


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


def _guest_name() -> str:
    return "guest-" + uuid.uuid4().hex[:8]


class ChatSession:
    """
    One logical connection to the relay.

    The caller drives it with connect(), send() and close() from a single
    task and observes it through three callbacks (plain functions or
    coroutines): on_connected(), on_disconnected() and
    on_message(author, text). Callbacks run on the receive task, so they may
    interleave with the caller's own calls.

    Transport problems never raise out of send(); they show up as a state
    change plus on_disconnected(). connect() never retries by itself, use
    reconnect() with a backoff policy for that.

        async with ChatSession(url="ws://localhost:1337/", display_name="alice") as session:
            session.on_message = lambda author, text: print(author, text)
            if await session.connect():
                await session.send("😀")
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        *,
        on_connected: Optional[ConnectionCallback] = None,
        on_disconnected: Optional[ConnectionCallback] = None,
        on_message: Optional[MessageCallback] = None,
        **overrides: Any,
    ) -> None:
        if config is None:
            config = SessionConfig(**overrides)
        elif overrides:
            raise TypeError("pass either a SessionConfig or keyword overrides, not both")
        self.config = config
        self.display_name = config.display_name or _guest_name()
        self.on_connected = on_connected
        self.on_disconnected = on_disconnected
        self.on_message = on_message

        self.state = SessionState.DISCONNECTED
        self.websocket: Optional[websockets.ClientConnection] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._disconnected = asyncio.Event()
        self._disconnected.set()
        self._closing = asyncio.Event()

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def connect(self) -> bool:
        """Open a connection; True on success. Failure fires on_disconnected."""
        if await self._attempt():
            return True
        if self.state is SessionState.DISCONNECTED:
            await self._notify(self.on_disconnected)
        return False

    async def reconnect(self, policy: Optional[ExponentialBackoff] = None) -> bool:
        """
        Retry connect() following ``policy``. Individual failed attempts are
        only logged; on_disconnected fires once if every attempt fails.
        """
        if self.is_open:
            return True
        policy = policy or ExponentialBackoff()
        for attempt, delay in enumerate(policy.delays(), start=1):
            if self.state is SessionState.CLOSED:
                return False
            limit = policy.max_attempts if policy.max_attempts is not None else "inf"
            logger.info(f"Reconnecting in {delay:.1f}s (attempt {attempt}/{limit})")
            try:
                # close() ends the wait early
                await asyncio.wait_for(self._closing.wait(), timeout=delay)
                return False
            except asyncio.TimeoutError:
                pass
            if await self._attempt():
                return True
        if self.state is SessionState.DISCONNECTED:
            logger.warning("Giving up on reconnecting")
            await self._notify(self.on_disconnected)
        return False

    async def _attempt(self) -> bool:
        if self.state is SessionState.CLOSED:
            logger.warning("connect() on a closed session")
            return False
        if self.state in (SessionState.OPEN, SessionState.CONNECTING):
            return self.state is SessionState.OPEN

        self.state = SessionState.CONNECTING
        self._connect_task = asyncio.create_task(self._open())
        try:
            websocket = await self._connect_task
        except asyncio.CancelledError:
            if self.state is SessionState.CLOSED:
                return False
            raise
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.warning(f"Could not connect to {self.config.url}: {str(e) or type(e).__name__}")
            self.state = SessionState.DISCONNECTED
            return False
        finally:
            self._connect_task = None

        if self.state is SessionState.CLOSED:
            # close() raced with a successful handshake
            with suppress(Exception):
                await websocket.close()
            return False

        self.websocket = websocket
        self.state = SessionState.OPEN
        self._disconnected.clear()
        logger.info(f"Connected to {self.config.url} as {self.display_name}")
        await self._notify(self.on_connected)
        self._recv_task = asyncio.create_task(self._recv_loop(websocket))
        return True

    async def _open(self) -> websockets.ClientConnection:
        return await websockets.connect(
            self.config.url,
            subprotocols=[self.config.subprotocol],
            open_timeout=self.config.connect_timeout,
            close_timeout=self.config.close_timeout,
            ping_interval=self.config.ping_interval,
            ping_timeout=self.config.ping_timeout,
        )

    async def send(self, text: str) -> bool:
        """
        Send ``text`` (an emoji) as a chat event authored by display_name.

        Returns False, without raising, when the session is not open or the
        text cannot be sent.
        """
        try:
            event = create_event(self.display_name, text)
        except ProtocolError as e:
            logger.warning(f"Not sending: {e}")
            return False
        return await self.send_raw(event.to_json())

    async def send_raw(self, payload: str) -> bool:
        """Write ``payload`` verbatim as one text frame."""
        websocket = self.websocket
        if not self.is_open or websocket is None:
            logger.debug(f"Dropping send while {self.state.value}")
            return False
        try:
            await websocket.send(payload)
        except websockets.exceptions.ConnectionClosed as e:
            # the receive loop reports the disconnect
            logger.warning(f"Connection closed while sending: {e}")
            return False
        return True

    async def _recv_loop(self, websocket: websockets.ClientConnection) -> None:
        try:
            async for raw in websocket:
                if isinstance(raw, bytes):
                    logger.debug(f"Ignoring {len(raw)}-byte binary frame")
                    continue
                try:
                    event = Event.from_json(raw)
                except ProtocolError as e:
                    logger.warning(f"Dropped inbound frame: {e}")
                    continue
                await self._notify(self.on_message, event.author, event.text)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Connection lost: {e}")
        except Exception as e:
            logger.error(f"Receive loop failed: {str(e) or type(e).__name__}")
        finally:
            if self.websocket is websocket:
                self.websocket = None
            if self.state is not SessionState.CLOSED:
                # close() owns the socket once the session is closed
                with suppress(Exception):
                    await websocket.close()
            self._recv_task = None
            self._disconnected.set()
            if self.state is SessionState.OPEN:
                self.state = SessionState.DISCONNECTED
                logger.info("Disconnected from relay")
                await self._notify(self.on_disconnected)

    async def wait_disconnected(self) -> None:
        """Return once the current connection (if any) has ended."""
        await self._disconnected.wait()

    async def close(self) -> None:
        """Disconnect immediately and clear every callback. Idempotent."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        self._closing.set()
        self.on_connected = self.on_disconnected = self.on_message = None

        current = asyncio.current_task()
        tasks = [t for t in (self._connect_task, self._recv_task) if t is not None and t is not current]
        for task in tasks:
            task.cancel()

        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            try:
                await websocket.close(code=1000)
            except Exception as e:
                logger.error(f"Error closing connection: {e}")

        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._disconnected.set()
        logger.debug(f"Session {self.display_name} closed")

    async def _notify(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Callback {getattr(callback, '__name__', callback)!r} failed: {e}")
