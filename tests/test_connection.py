"""Unit tests for chesslink/connection.py"""

import asyncio

import pytest

from chesslink import protocol
from chesslink.config import make_config
from chesslink.connection import ConnectionManager
from chesslink.constants import ConnectionState
from chesslink.errors import HandshakeError, InvocationError, TransportError

from conftest import FakeHub, HubError, wait_for


@pytest.mark.asyncio
async def test_connect_reuses_the_live_channel(connection: ConnectionManager, hub: FakeHub) -> None:
    await asyncio.gather(connection.connect(), connection.connect())
    await connection.connect()

    assert connection.state == ConnectionState.CONNECTED
    assert len(hub.sockets) == 1


@pytest.mark.asyncio
async def test_invoke_returns_the_completion_result(connection: ConnectionManager, hub: FakeHub) -> None:
    hub.responders["Echo"] = lambda *args: {"args": list(args)}
    await connection.connect()

    assert await connection.invoke("Echo", 1, "x", None) == {"args": [1, "x", None]}
    assert hub.calls_to("Echo") == [[1, "x", None]]


@pytest.mark.asyncio
async def test_error_completion_raises_invocation_error(connection: ConnectionManager, hub: FakeHub) -> None:
    hub.responders["Broken"] = lambda: HubError("hub method failed")
    await connection.connect()

    with pytest.raises(InvocationError, match="hub method failed"):
        await connection.invoke("Broken")
    assert connection.is_connected


@pytest.mark.asyncio
async def test_invoke_without_channel_fails_fast(connection: ConnectionManager, hub: FakeHub) -> None:
    with pytest.raises(TransportError):
        await connection.invoke("CreateGame", "x")
    assert hub.sockets == []


@pytest.mark.asyncio
async def test_drop_fails_outstanding_call_and_reconnects(connection: ConnectionManager, hub: FakeHub) -> None:
    states = []
    connection.add_state_listener(lambda old, new: states.append(new))
    await connection.connect()

    call = asyncio.create_task(connection.invoke("Slow"))
    await wait_for(lambda: hub.held)
    hub.drop()

    with pytest.raises(TransportError):
        await call
    await wait_for(lambda: connection.is_connected and len(hub.sockets) == 2)
    assert states == [
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTED,
    ]


@pytest.mark.asyncio
async def test_failed_first_attempt_raises_then_retries(connection: ConnectionManager, hub: FakeHub) -> None:
    hub.fail_connects = 2

    with pytest.raises(TransportError):
        await connection.connect()
    assert connection.state == ConnectionState.RECONNECTING

    await wait_for(lambda: connection.is_connected)
    assert len(hub.sockets) == 1


def test_backoff_schedule_holds_its_last_delay() -> None:
    conn = ConnectionManager(make_config(keepalive_interval=0), reconnect_delays=[0, 2, 5, 10])
    assert [conn._delay(i) for i in range(6)] == [0, 2, 5, 10, 10, 10]


@pytest.mark.asyncio
async def test_handshake_error_is_a_transport_error(connection: ConnectionManager, hub: FakeHub) -> None:
    hub.handshake_error = "protocol not supported"

    with pytest.raises(HandshakeError, match="protocol not supported"):
        await connection.connect()
    await connection.close()
    assert connection.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_events_reach_handlers_in_order(connection: ConnectionManager, hub: FakeHub) -> None:
    seen = []

    def broken(payload):
        raise RuntimeError("handler bug")

    connection.on("MoveMade", broken)
    connection.on("MoveMade", seen.append)
    await connection.connect()

    hub.push("MoveMade", {"fen": "a"})
    hub.push("MoveMade", {"fen": "b"})
    await wait_for(lambda: len(seen) == 2)
    assert seen == [{"fen": "a"}, {"fen": "b"}]

    connection.off("MoveMade", seen.append)
    markers = []
    connection.on("Marker", markers.append)
    hub.push("MoveMade", {"fen": "c"})
    hub.push("Marker", 1)
    await wait_for(lambda: markers)
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_events_are_delivered_while_a_call_is_outstanding(connection: ConnectionManager, hub: FakeHub) -> None:
    chat = []
    connection.on("GameMessage", chat.append)
    await connection.connect()

    call = asyncio.create_task(connection.invoke("MakeMove", "room-1", "e2", "e4"))
    await wait_for(lambda: hub.held)
    hub.push("GameMessage", {"text": "hi"})
    await wait_for(lambda: chat)
    assert not call.done()

    hub.complete("MakeMove", {"success": True})
    assert await call == {"success": True}


@pytest.mark.asyncio
async def test_records_sent_with_the_handshake_are_dispatched(connection: ConnectionManager, hub: FakeHub) -> None:
    hello = []
    connection.on("Connected", hello.append)
    hub.greeting = [protocol.encode({"type": protocol.INVOCATION, "target": "Connected", "arguments": [{"id": "c1"}]})]

    await connection.connect()

    await wait_for(lambda: hello)
    assert hello == [{"id": "c1"}]


@pytest.mark.asyncio
async def test_server_close_record_triggers_reconnect(connection: ConnectionManager, hub: FakeHub) -> None:
    await connection.connect()

    hub.socket.incoming.put_nowait(protocol.encode({"type": protocol.CLOSE, "error": "restarting"}))

    await wait_for(lambda: connection.is_connected and len(hub.sockets) == 2)
    assert hub.sockets[0].closed


@pytest.mark.asyncio
async def test_send_does_not_wait_for_completion(connection: ConnectionManager, hub: FakeHub) -> None:
    await connection.connect()

    await connection.send("SendGameMessage", "room-1", "gg")

    assert hub.calls_to("SendGameMessage") == [["room-1", "gg"]]
    assert hub.held == []


@pytest.mark.asyncio
async def test_keepalive_pings(hub: FakeHub) -> None:
    conn = ConnectionManager(make_config(keepalive_interval=0.005), connector=hub.connect, reconnect_delays=[0])
    await conn.connect()
    try:
        await wait_for(lambda: hub.pings >= 2)
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_close_is_final_and_repeatable(connection: ConnectionManager, hub: FakeHub) -> None:
    await connection.connect()
    call = asyncio.create_task(connection.invoke("Slow"))
    await wait_for(lambda: hub.held)

    await connection.close()
    await connection.close()

    with pytest.raises(TransportError):
        await call
    assert connection.state == ConnectionState.DISCONNECTED
    assert hub.socket.closed
    with pytest.raises(TransportError):
        await connection.invoke("Echo")
    await asyncio.sleep(0.01)
    assert len(hub.sockets) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "frame",
    [
        b"\xff\xfe{\x1e",
        protocol.encode({"type": protocol.COMPLETION, "invocationId": ["1"], "result": None}),
        protocol.encode({"type": protocol.INVOCATION, "target": ["MoveMade"], "arguments": []}),
        protocol.encode({"type": protocol.INVOCATION, "target": "MoveMade", "arguments": 5}),
    ],
)
async def test_malformed_frames_do_not_stop_reconnecting(
    connection: ConnectionManager, hub: FakeHub, frame: str | bytes
) -> None:
    seen = []
    connection.on("MoveMade", seen.append)
    await connection.connect()

    hub.socket.incoming.put_nowait(frame)
    hub.push("MoveMade", {"fen": "after"})
    await wait_for(lambda: seen)
    assert connection.is_connected

    hub.drop()
    await wait_for(lambda: connection.is_connected and len(hub.sockets) == 2)
    assert seen == [{"fen": "after"}]
