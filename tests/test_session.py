import asyncio

import pytest
import websockets

from client.backoff import ExponentialBackoff
from client.ws_client import ChatSession, SessionState
from conftest import frame, free_port, relay_url, running_relay, wait_for
from shared.wire import Event


class Recorder:
    def __init__(self):
        self.connected = 0
        self.disconnected = 0
        self.messages = []

    def attach(self, session):
        session.on_connected = self.on_connected
        session.on_disconnected = self.on_disconnected
        session.on_message = self.on_message
        return session

    def on_connected(self):
        self.connected += 1

    def on_disconnected(self):
        self.disconnected += 1

    def on_message(self, author, text):
        self.messages.append((author, text))


@pytest.mark.asyncio
async def test_emoji_reaches_the_other_session_only():
    async with running_relay() as relay:
        rec_a, rec_b = Recorder(), Recorder()
        async with ChatSession(url=relay_url(relay), display_name="A") as a, \
                ChatSession(url=relay_url(relay), display_name="B") as b:
            rec_a.attach(a)
            rec_b.attach(b)
            assert await a.connect()
            assert await b.connect()
            assert await wait_for(lambda: len(relay.connections) == 2)

            assert await a.send("😀") is True

            assert await wait_for(lambda: rec_b.messages == [("A", "😀")])
            await asyncio.sleep(0.2)
            assert rec_a.messages == []
            assert rec_a.connected == rec_b.connected == 1


@pytest.mark.asyncio
async def test_send_while_disconnected_is_a_silent_no_op():
    session = ChatSession(url=f"ws://127.0.0.1:{free_port()}/", display_name="A")

    assert await session.send("😀") is False
    assert await session.send_raw("anything") is False
    assert session.state is SessionState.DISCONNECTED
    assert session.websocket is None


@pytest.mark.asyncio
async def test_connect_failure_notifies_disconnected():
    rec = Recorder()
    session = rec.attach(ChatSession(url=f"ws://127.0.0.1:{free_port()}/", connect_timeout=2.0))

    assert await session.connect() is False

    assert session.state is SessionState.DISCONNECTED
    assert rec.disconnected == 1
    assert rec.connected == 0
    await session.close()


@pytest.mark.asyncio
async def test_relay_shutdown_surfaces_as_disconnect():
    rec = Recorder()
    async with running_relay() as relay:
        session = rec.attach(ChatSession(url=relay_url(relay)))
        assert await session.connect()
        assert await wait_for(lambda: len(relay.connections) == 1)
    # relay gone
    assert await wait_for(lambda: rec.disconnected == 1)
    assert session.state is SessionState.DISCONNECTED
    assert await session.send("😀") is False
    await session.close()


@pytest.mark.asyncio
async def test_close_clears_callbacks_and_is_final():
    async with running_relay() as relay:
        rec = Recorder()
        session = rec.attach(ChatSession(url=relay_url(relay)))
        assert await session.connect()

        await session.close()
        await session.close()

        assert session.state is SessionState.CLOSED
        assert session.on_connected is None
        assert session.on_disconnected is None
        assert session.on_message is None
        assert rec.disconnected == 0
        assert await session.send("😀") is False
        assert await session.connect() is False
        assert await wait_for(lambda: len(relay.connections) == 0)


@pytest.mark.asyncio
async def test_context_manager_closes_on_error():
    async with running_relay() as relay:
        with pytest.raises(RuntimeError):
            async with ChatSession(url=relay_url(relay)) as session:
                assert await session.connect()
                raise RuntimeError("caller blew up")
        assert session.state is SessionState.CLOSED
        assert await wait_for(lambda: len(relay.connections) == 0)


@pytest.mark.asyncio
async def test_inbound_frames_are_validated():
    async def chatty(websocket):
        await websocket.send("not json")
        await websocket.send(b"\x00\x01")
        await websocket.send(frame("X", "😀", msg_type="typing"))
        await websocket.send('{"type":"message","data":{"author":"X","text":"\\ud800"}}')
        await websocket.send("[" * 60000)
        await websocket.send('{"type":"message","data":{"author":"X"}}')
        await websocket.send(frame("X", "🎉"))
        await websocket.wait_closed()

    async with websockets.serve(chatty, "127.0.0.1", 0, subprotocols=["chat"]) as server:
        port = list(server.sockets)[0].getsockname()[1]
        received = []
        async with ChatSession(url=f"ws://127.0.0.1:{port}/") as session:
            session.on_message = lambda author, text: received.append((author, text))
            assert await session.connect()
            assert await wait_for(lambda: received == [("X", "🎉")])
            assert session.is_open


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited():
    async with running_relay() as relay:
        got = asyncio.Event()
        seen = []

        async def on_message(author, text):
            seen.append((author, text))
            got.set()

        async with ChatSession(url=relay_url(relay), display_name="A") as a, \
                ChatSession(url=relay_url(relay), on_message=on_message) as b:
            assert await a.connect()
            assert await b.connect()
            assert await wait_for(lambda: len(relay.connections) == 2)
            await a.send("🚀")
            await asyncio.wait_for(got.wait(), timeout=2.0)
            assert seen == [("A", "🚀")]


@pytest.mark.asyncio
async def test_failing_callback_does_not_kill_the_session():
    async with running_relay() as relay:
        calls = []

        def explode(author, text):
            calls.append(text)
            raise ValueError("gui bug")

        async with ChatSession(url=relay_url(relay), display_name="A") as a, \
                ChatSession(url=relay_url(relay), on_message=explode) as b:
            assert await a.connect()
            assert await b.connect()
            assert await wait_for(lambda: len(relay.connections) == 2)
            await a.send("1️⃣")
            await a.send("2️⃣")
            assert await wait_for(lambda: calls == ["1️⃣", "2️⃣"])
            assert b.is_open


@pytest.mark.asyncio
async def test_send_uses_current_display_name_and_rejects_empty_text():
    async with running_relay() as relay:
        received = []
        async with ChatSession(url=relay_url(relay), display_name="old") as a, \
                ChatSession(url=relay_url(relay), on_message=lambda *m: received.append(m)) as b:
            assert await a.connect()
            assert await b.connect()
            assert await wait_for(lambda: len(relay.connections) == 2)

            assert await a.send("") is False
            a.display_name = "new"
            assert await a.send("🌈")
            assert await wait_for(lambda: received == [("new", "🌈")])


@pytest.mark.asyncio
async def test_session_without_name_gets_a_guest_name():
    session = ChatSession(url="ws://127.0.0.1:1337/")

    assert session.display_name.startswith("guest-")


@pytest.mark.asyncio
async def test_reconnect_after_relay_restart():
    port = free_port()
    rec = Recorder()
    async with ChatSession(url=f"ws://127.0.0.1:{port}/", display_name="A") as session:
        rec.attach(session)
        async with running_relay(port):
            assert await session.connect()
        assert await wait_for(lambda: rec.disconnected == 1)

        async with running_relay(port) as relay:
            ok = await session.reconnect(ExponentialBackoff(base=0.05, max_delay=0.2, max_attempts=20))
            assert ok is True
            assert session.is_open
            assert rec.connected == 2
            assert await wait_for(lambda: len(relay.connections) == 1)


@pytest.mark.asyncio
async def test_reconnect_gives_up_after_max_attempts():
    rec = Recorder()
    async with ChatSession(url=f"ws://127.0.0.1:{free_port()}/") as session:
        rec.attach(session)

        ok = await session.reconnect(ExponentialBackoff(base=0.01, max_attempts=3))

        assert ok is False
        assert rec.disconnected == 1
        assert session.state is SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_close_unblocks_pending_reconnect():
    async with ChatSession(url=f"ws://127.0.0.1:{free_port()}/") as session:
        task = asyncio.create_task(session.reconnect(ExponentialBackoff(base=0.05, max_attempts=None)))
        await asyncio.sleep(0.2)
        await session.close()
        assert await asyncio.wait_for(task, timeout=2.0) is False


@pytest.mark.asyncio
async def test_close_unblocks_pending_handshake():
    writers = []

    async def never_upgrades(reader, writer):
        writers.append(writer)
        await reader.read()

    server = await asyncio.start_server(never_upgrades, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        session = ChatSession(url=f"ws://127.0.0.1:{port}/", connect_timeout=10.0)
        task = asyncio.create_task(session.connect())
        assert await wait_for(lambda: writers)
        assert session.state is SessionState.CONNECTING

        await session.close()

        assert await asyncio.wait_for(task, timeout=1.0) is False
        assert session.state is SessionState.CLOSED
        assert session.websocket is None
    finally:
        for writer in writers:
            writer.close()
        server.close()


@pytest.mark.asyncio
async def test_unexpected_receive_error_closes_the_socket(monkeypatch):
    server_saw_close = asyncio.Event()

    async def one_frame(websocket):
        await websocket.send(frame("X", "😀"))
        await websocket.wait_closed()
        server_saw_close.set()

    def broken_decoder(raw):
        raise RuntimeError("decoder bug")

    monkeypatch.setattr(Event, "from_json", broken_decoder)
    async with websockets.serve(one_frame, "127.0.0.1", 0, subprotocols=["chat"]) as server:
        port = list(server.sockets)[0].getsockname()[1]
        rec = Recorder()
        async with ChatSession(url=f"ws://127.0.0.1:{port}/") as session:
            rec.attach(session)
            assert await session.connect()

            assert await wait_for(lambda: rec.disconnected == 1)
            assert session.state is SessionState.DISCONNECTED
            assert session.websocket is None
            await asyncio.wait_for(server_saw_close.wait(), timeout=3.0)


@pytest.mark.asyncio
async def test_wait_disconnected_follows_the_connection():
    async with running_relay() as relay:
        session = ChatSession(url=relay_url(relay))
        # nothing to wait for before the first connect
        await asyncio.wait_for(session.wait_disconnected(), timeout=1.0)

        assert await session.connect()
        waiter = asyncio.create_task(session.wait_disconnected())
        await asyncio.sleep(0.2)
        assert not waiter.done()
    await asyncio.wait_for(waiter, timeout=3.0)
    assert session.state is SessionState.DISCONNECTED
    await session.close()
