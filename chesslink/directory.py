"""
Creating, joining and rejoining sessions through the hub.

Every successful call seeds the attached GameSession and remembers
{session id, color} so the seat can be reclaimed after a reconnect or
a restart of the client.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any

from .constants import (
    CREATE_GAME,
    ENSURE_JOINED,
    INVITE_CODE_LENGTH,
    JOIN_BY_INVITE_CODE,
    START_FEN,
    Color,
    ConnectionState,
    Status,
)
from .errors import (
    CreateRejected,
    InvocationError,
    InviteExpired,
    InviteNotFound,
    RejoinRejected,
    TransportError,
)
from .events import PlayerRef, field, parse_color
from .identity import IdentityStore, PlayerIdentity
from .session import GameSession, SessionSnapshot

logger = logging.getLogger(__name__)

_INVITE_CODE_RE = re.compile(rf"^[A-Z0-9]{{{INVITE_CODE_LENGTH}}}$")


@dataclass(frozen=True)
class CreatedSession:
    session_id: str
    invite_code: str | None
    assigned_color: Color = Color.WHITE


@dataclass(frozen=True)
class JoinedSession:
    session_id: str
    assigned_color: Color
    snapshot: SessionSnapshot
    is_reconnect: bool = False


def normalize_invite_code(code: str) -> str:
    """Invite codes are case-insensitive and fixed-length."""
    normalized = (code or "").strip().upper()
    if not _INVITE_CODE_RE.match(normalized):
        raise InviteNotFound(f"invite code must be {INVITE_CODE_LENGTH} letters or digits")
    return normalized


def _join_error(result: Any) -> InviteNotFound | InviteExpired:
    message = field(result, "message") or "invite code not found"
    code = field(result, "errorCode") or ""
    if "expired" in f"{code} {message}".lower():
        return InviteExpired(message)
    return InviteNotFound(message)


class SessionDirectory:
    def __init__(self, connection, store: IdentityStore, session: GameSession | None = None):
        self._connection = connection
        self._store = store
        self.session = session
        self._rejoin_task: asyncio.Task | None = None
        connection.add_state_listener(self._on_connection_state)

    @property
    def rejoin_task(self) -> asyncio.Task | None:
        return self._rejoin_task

    def detach(self) -> None:
        self._connection.remove_state_listener(self._on_connection_state)

    async def create_session(self, name: str, identity: PlayerIdentity | None = None) -> CreatedSession:
        name = (name or "").strip()
        if not name:
            raise CreateRejected("game name is required")
        identity = identity or self._store.identity()
        try:
            result = await self._connection.invoke(CREATE_GAME, name, identity.display_name, identity.player_id)
        except InvocationError as e:
            raise CreateRejected(str(e)) from e
        room_id = field(result, "roomId")
        if not field(result, "success") or not room_id:
            raise CreateRejected(field(result, "message") or "could not create game")
        invite_code = field(result, "inviteCode")
        logger.info("DIR: created room=%s invite=%s", room_id, invite_code)
        snapshot = SessionSnapshot(
            session_id=room_id,
            status=Status.WAITING,
            white=PlayerRef(identity.player_id, identity.display_name),
            position=START_FEN,
            invite_code=invite_code,
        )
        self._adopt(snapshot, Color.WHITE)
        return CreatedSession(session_id=room_id, invite_code=invite_code)

    async def join_by_invite_code(self, code: str, identity: PlayerIdentity | None = None) -> JoinedSession:
        code = normalize_invite_code(code)
        identity = identity or self._store.identity()
        try:
            result = await self._connection.invoke(JOIN_BY_INVITE_CODE, code, identity.display_name, identity.player_id)
        except InvocationError as e:
            raise _join_error({"message": str(e)}) from e
        if not field(result, "success"):
            raise _join_error(result)
        room_id = field(result, "roomId")
        if not room_id:
            raise InviteNotFound("server did not return a room for this code")
        color = parse_color(field(result, "yourColor")) or Color.BLACK
        snapshot = SessionSnapshot.from_result(room_id, result, identity, color)
        logger.info("DIR: joined room=%s via %s as %s", room_id, code, color)
        self._adopt(snapshot, color)
        return JoinedSession(session_id=room_id, assigned_color=color, snapshot=snapshot)

    async def rejoin(self, session_id: str, identity: PlayerIdentity | None = None) -> JoinedSession:
        identity = identity or self._store.identity()
        try:
            result = await self._connection.invoke(ENSURE_JOINED, session_id, identity.display_name, identity.player_id)
        except InvocationError as e:
            self.forget()
            raise RejoinRejected(str(e)) from e
        if not field(result, "success"):
            self.forget()
            raise RejoinRejected(field(result, "message") or "could not rejoin game")
        stored = self._store.last_session()
        color = parse_color(field(result, "yourColor"))
        if color is None:
            color = stored.assigned_color if stored and stored.session_id == session_id else Color.WHITE
        snapshot = SessionSnapshot.from_result(session_id, result, identity, color)
        logger.info("DIR: rejoined room=%s as %s status=%s", session_id, color, snapshot.status)
        self._adopt(snapshot, color)
        return JoinedSession(session_id=session_id, assigned_color=color, snapshot=snapshot, is_reconnect=True)

    def forget(self) -> None:
        """Drop the cached session; the next reconnect will not rejoin it."""
        self._store.forget_session()

    def _adopt(self, snapshot: SessionSnapshot, color: Color) -> None:
        self._store.remember_session(snapshot.session_id, color)
        if self.session is not None:
            self.session.seed(snapshot, color)

    # --- automatic rejoin ---

    def _on_connection_state(self, old: ConnectionState, new: ConnectionState) -> None:
        if new != ConnectionState.CONNECTED:
            return
        stored = self._store.last_session()
        if stored is None:
            return
        if self._rejoin_task is not None and not self._rejoin_task.done():
            return
        logger.info("DIR: connected with cached room=%s, rejoining", stored.session_id)
        self._rejoin_task = asyncio.get_running_loop().create_task(self._auto_rejoin(stored.session_id))

    async def _auto_rejoin(self, session_id: str) -> JoinedSession | None:
        try:
            return await self.rejoin(session_id)
        except RejoinRejected as e:
            logger.warning("DIR: rejoin of %s refused: %s", session_id, e)
        except TransportError as e:
            logger.warning("DIR: rejoin of %s interrupted, will retry on reconnect: %s", session_id, e)
        return None
