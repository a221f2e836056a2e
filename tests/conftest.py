import asyncio
import json
import os
import socket
from contextlib import asynccontextmanager

# keep test runs from writing logs/emoji-relay.log
os.environ.setdefault("EMOJI_RELAY_LOG_DIR", "")


def frame(author, text, msg_type="message"):
    return json.dumps({"type": msg_type, "data": {"author": author, "text": text}}, ensure_ascii=False)


class DummyWebSocket:
    def __init__(self, *, fail: bool = False, delay: float = 0.0, remote_address=("127.0.0.1", 50000)) -> None:
        self.sent_messages: list[str] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.fail = fail
        self.delay = delay
        self.remote_address = remote_address

    async def send(self, data: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise OSError("broken pipe")
        self.sent_messages.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason

    def received(self):
        return [json.loads(m) for m in self.sent_messages]


async def wait_for(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while loop.time() < end:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@asynccontextmanager
async def running_relay(port: int = 0, **overrides):
    from server.server import RelayServer

    relay = RelayServer(host="127.0.0.1", port=port, **overrides)
    task = asyncio.create_task(relay.start_server())
    await relay.wait_ready()
    try:
        yield relay
    finally:
        await relay.stop()
        await task


def relay_url(relay, path="/"):
    return f"ws://127.0.0.1:{relay.bound_port}{path}"
