"""
Shared fakes for the client tests.

FakeHub plays the remote authority over an in-memory socket that speaks the
real record-separated protocol. StubConnection stands in for the whole
ConnectionManager when only session logic is under test.
"""
import asyncio
from collections import defaultdict
from typing import Any, Callable, Iterator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedError

from chesslink import protocol
from chesslink.config import make_config
from chesslink.connection import ConnectionManager
from chesslink.constants import START_FEN, Color, ConnectionState, Status
from chesslink.events import PlayerRef
from chesslink.identity import IdentityStore, PlayerIdentity
from chesslink.session import GameSession, SessionSnapshot

ROOM_ID = "room-1"
INVITE_CODE = "A1B2C3D4"

_DROP = object()


class HubError(Exception):
    """Returned by a responder to make the hub answer with an error completion."""


class FakeSocket:
    def __init__(self, hub: "FakeHub"):
        self.hub = hub
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedError(None, None)
        self.hub.receive(self, data)

    async def recv(self) -> str:
        item = await self.incoming.get()
        if item is _DROP:
            self.closed = True
            raise ConnectionClosedError(None, None)
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.incoming.put_nowait(_DROP)


class FakeHub:
    def __init__(self):
        self.sockets: list[FakeSocket] = []
        self.calls: list[tuple[str, list[Any]]] = []
        self.held: list[tuple[str, str, list[Any]]] = []
        self.responders: dict[str, Callable[..., Any]] = {}
        self.pings = 0
        self.fail_connects = 0
        self.handshake_error: str | None = None
        self.greeting: list[str] = []

    async def connect(self, url: str) -> FakeSocket:
        if self.fail_connects:
            self.fail_connects -= 1
            raise OSError("connection refused")
        sock = FakeSocket(self)
        self.sockets.append(sock)
        return sock

    @property
    def socket(self) -> FakeSocket:
        return self.sockets[-1]

    def receive(self, sock: FakeSocket, data: str) -> None:
        for record in protocol.RecordReader().feed(data):
            if record.get("protocol") == "json":
                reply = {"error": self.handshake_error} if self.handshake_error else {}
                frame = protocol.encode(reply) + "".join(self.greeting)
                sock.incoming.put_nowait(frame)
            elif record.get("type") == protocol.PING:
                self.pings += 1
            elif record.get("type") == protocol.INVOCATION:
                self._invoke(sock, record)

    def _invoke(self, sock: FakeSocket, record: dict[str, Any]) -> None:
        target, args = record["target"], record.get("arguments", [])
        self.calls.append((target, args))
        invocation_id = record.get("invocationId")
        if invocation_id is None:
            return
        responder = self.responders.get(target)
        if responder is None:
            self.held.append((target, invocation_id, args))
            return
        self._reply(sock, invocation_id, responder(*args))

    def _reply(self, sock: FakeSocket, invocation_id: str, result: Any) -> None:
        if isinstance(result, HubError):
            message = {"type": protocol.COMPLETION, "invocationId": invocation_id, "error": str(result)}
        else:
            message = {"type": protocol.COMPLETION, "invocationId": invocation_id, "result": result}
        sock.incoming.put_nowait(protocol.encode(message))

    def complete(self, target: str, result: Any) -> None:
        """Answer the oldest held invocation of `target`."""
        for i, (held_target, invocation_id, _) in enumerate(self.held):
            if held_target == target:
                self.held.pop(i)
                self._reply(self.socket, invocation_id, result)
                return
        raise AssertionError(f"no held call to {target}")

    def push(self, event: str, *args: Any) -> None:
        self.socket.incoming.put_nowait(
            protocol.encode({"type": protocol.INVOCATION, "target": event, "arguments": list(args)})
        )

    def drop(self) -> None:
        self.socket.incoming.put_nowait(_DROP)

    def calls_to(self, target: str) -> list[list[Any]]:
        return [args for t, args in self.calls if t == target]


class StubConnection:
    def __init__(self):
        self.handlers: dict[str, list[Callable]] = defaultdict(list)
        self.state_listeners: list[Callable] = []
        self.state = ConnectionState.CONNECTED
        self.invoke = AsyncMock(return_value={"success": True})

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def on(self, event: str, handler: Callable) -> None:
        self.handlers[event].append(handler)

    def off(self, event: str, handler: Callable) -> None:
        if handler in self.handlers[event]:
            self.handlers[event].remove(handler)

    def add_state_listener(self, listener: Callable) -> None:
        self.state_listeners.append(listener)

    def remove_state_listener(self, listener: Callable) -> None:
        if listener in self.state_listeners:
            self.state_listeners.remove(listener)

    def emit(self, event: str, payload: Any) -> None:
        for handler in list(self.handlers[event]):
            handler(payload)

    def set_state(self, new: ConnectionState) -> None:
        old, self.state = self.state, new
        for listener in list(self.state_listeners):
            listener(old, new)


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


def seed_playing(session: GameSession, color: Color = Color.WHITE, position: str = START_FEN) -> None:
    me = PlayerRef(session.identity.player_id, session.identity.display_name)
    opponent = PlayerRef("opp-id", "Bob")
    white, black = (me, opponent) if color == Color.WHITE else (opponent, me)
    session.seed(
        SessionSnapshot(session_id=ROOM_ID, status=Status.PLAYING, white=white, black=black, position=position),
        color,
    )


@pytest.fixture
def store(tmp_path) -> IdentityStore:
    return IdentityStore(tmp_path / "state.json", default_name="Alice")


@pytest.fixture
def identity(store: IdentityStore) -> PlayerIdentity:
    return store.identity()


@pytest.fixture
def stub() -> StubConnection:
    return StubConnection()


@pytest.fixture
def session(stub: StubConnection, identity: PlayerIdentity) -> Iterator[GameSession]:
    game = GameSession(stub, identity)
    yield game
    game.detach()


@pytest.fixture
def hub() -> FakeHub:
    return FakeHub()


@pytest_asyncio.fixture
async def connection(hub: FakeHub):
    conn = ConnectionManager(
        make_config(keepalive_interval=0, hub_url="ws://hub.test/chessHub"),
        connector=hub.connect,
        reconnect_delays=[0],
    )
    yield conn
    await conn.close()
