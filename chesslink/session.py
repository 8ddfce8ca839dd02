"""
Local mirror of one game session and move reconciliation.

The hub owns the real game. The mirror keeps two positions: the confirmed
one (last thing the hub told us) and, while a local move is in flight, the
pending one. Rolling back a rejected move just drops the pending half.
"""
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable

from . import rules
from .chat import ChatLog, ChatMessage
from .constants import (
    EVENT_GAME_ENDED,
    EVENT_GAME_MESSAGE,
    EVENT_GAME_STARTED,
    EVENT_MOVE_MADE,
    EVENT_PLAYER_JOINED,
    MAKE_MOVE,
    SEND_GAME_MESSAGE,
    START_FEN,
    Color,
    Status,
)
from .errors import (
    ChatError,
    IllegalMoveLocal,
    InvocationError,
    MovePending,
    MoveRejectedByAuthority,
    NotYourTurn,
    TransportError,
)
from .events import (
    RESULT_WINNERS,
    ChatPosted,
    GameEnded,
    MoveApplied,
    PlayerJoinedOpponent,
    PlayerRef,
    SessionStarted,
    field,
    parse_color,
)
from .identity import PlayerIdentity

logger = logging.getLogger(__name__)

HUB_STATUSES = {
    "waitingforplayer": Status.WAITING,
    "waiting": Status.WAITING,
    "inprogress": Status.PLAYING,
    "playing": Status.PLAYING,
    "finished": Status.FINISHED,
    "completed": Status.FINISHED,
    "gameover": Status.FINISHED,
}

DEFAULT_OPPONENT_NAME = "Waiting for opponent"


def parse_status(value: Any) -> Status:
    if isinstance(value, str):
        return HUB_STATUSES.get(value.replace("_", "").lower(), Status.WAITING)
    return Status.WAITING


@dataclass(frozen=True)
class Move:
    from_sq: str
    to_sq: str
    promotion: str | None = None

    @property
    def uci(self) -> str:
        return self.from_sq + self.to_sq + (self.promotion or "")


@dataclass(frozen=True)
class Outcome:
    winner: Color | None  # None is a draw
    reason: str
    provisional: bool = False


@dataclass
class SessionSnapshot:
    session_id: str
    status: Status = Status.WAITING
    white: PlayerRef | None = None
    black: PlayerRef | None = None
    position: str = START_FEN
    turn_count: int = 0
    invite_code: str | None = None
    result: str | None = None

    @property
    def players(self) -> dict[Color, PlayerRef | None]:
        return {Color.WHITE: self.white, Color.BLACK: self.black}

    @classmethod
    def from_result(
        cls,
        session_id: str,
        result: Any,
        identity: PlayerIdentity,
        assigned_color: Color,
    ) -> "SessionSnapshot":
        """Build a snapshot from a JoinByInviteCode / EnsureJoined result."""
        seats: dict[Color, PlayerRef | None] = {
            Color.WHITE: PlayerRef.from_payload(field(result, "whitePlayer")),
            Color.BLACK: PlayerRef.from_payload(field(result, "blackPlayer")),
        }
        seats[assigned_color] = PlayerRef(identity.player_id, identity.display_name)
        opponent = field(result, "opponent")
        if seats[assigned_color.opponent] is None and opponent:
            seats[assigned_color.opponent] = PlayerRef(player_id="", display_name=str(opponent))
        status = parse_status(field(result, "status"))
        if status == Status.PLAYING and seats[assigned_color.opponent] is None:
            seats[assigned_color.opponent] = PlayerRef(player_id="", display_name="Opponent")
        return cls(
            session_id=session_id,
            status=status,
            white=seats[Color.WHITE],
            black=seats[Color.BLACK],
            position=rules.normalize(field(result, "fen")),
            turn_count=int(field(result, "moveCount") or 0),
            invite_code=field(result, "inviteCode"),
            result=field(result, "result") or field(result, "winner"),
        )


@dataclass(frozen=True)
class PendingMove:
    move: Move
    position: str
    previous_last_move: tuple[str, str] | None


@dataclass(frozen=True)
class MoveResult:
    move: Move
    position: str
    corrected: bool = False


@dataclass(frozen=True)
class BoardView:
    """Everything the board widget needs to draw and accept input."""

    position: str
    orientation: Color
    turn_owner: Color
    movable_side: Color | None
    legal_destinations: dict[str, set[str]]
    last_move: tuple[str, str] | None
    view_only: bool


SessionListener = Callable[["GameSession", str], Any]


class GameSession:
    def __init__(self, connection, identity: PlayerIdentity, chat: ChatLog | None = None):
        self._connection = connection
        self.identity = identity
        self.chat = chat if chat is not None else ChatLog()
        self.session_id: str | None = None
        self.status = Status.WAITING
        self.white: PlayerRef | None = None
        self.black: PlayerRef | None = None
        self.confirmed_position = START_FEN
        self.turn_count = 0
        self.invite_code: str | None = None
        self.local_color: Color | None = None
        self.last_move: tuple[str, str] | None = None
        self.outcome: Outcome | None = None
        self.remaining_ms: tuple[int, int] | None = None
        self._opponent_name: str | None = None
        self._pending: PendingMove | None = None
        self._listeners: list[SessionListener] = []
        self._handlers = {
            EVENT_GAME_STARTED: self._on_game_started,
            EVENT_MOVE_MADE: self._on_move_made,
            EVENT_PLAYER_JOINED: self._on_player_joined,
            EVENT_GAME_MESSAGE: self._on_game_message,
            EVENT_GAME_ENDED: self._on_game_ended,
        }
        for event, handler in self._handlers.items():
            connection.on(event, handler)

    def detach(self) -> None:
        """Stop listening to the hub. The connection itself stays open."""
        for event, handler in self._handlers.items():
            self._connection.off(event, handler)

    # --- derived state ---

    @property
    def position(self) -> str:
        return self._pending.position if self._pending else self.confirmed_position

    @property
    def pending_move(self) -> Move | None:
        return self._pending.move if self._pending else None

    @property
    def turn_owner(self) -> Color:
        return rules.turn_owner(self.position)

    @property
    def is_local_turn(self) -> bool:
        return (
            self.local_color is not None
            and self.status == Status.PLAYING
            and self.local_color == self.turn_owner
        )

    @property
    def players(self) -> dict[Color, PlayerRef | None]:
        return {Color.WHITE: self.white, Color.BLACK: self.black}

    @property
    def opponent_name(self) -> str:
        if self.local_color is not None:
            seat = self.players[self.local_color.opponent]
            if seat is not None and seat.display_name:
                return seat.display_name
        return self._opponent_name or DEFAULT_OPPONENT_NAME

    def legal_destinations(self) -> dict[str, set[str]]:
        if not self.is_local_turn or self._pending is not None:
            return {}
        return rules.all_destinations(self.position)

    def board_view(self) -> BoardView:
        return BoardView(
            position=self.position,
            orientation=self.local_color or Color.WHITE,
            turn_owner=self.turn_owner,
            movable_side=self.local_color if self.is_local_turn else None,
            legal_destinations=self.legal_destinations(),
            last_move=self.last_move,
            view_only=self.status != Status.PLAYING,
        )

    def snapshot(self) -> SessionSnapshot | None:
        if self.session_id is None:
            return None
        return SessionSnapshot(
            session_id=self.session_id,
            status=self.status,
            white=self.white,
            black=self.black,
            position=self.confirmed_position,
            turn_count=self.turn_count,
            invite_code=self.invite_code,
        )

    # --- listeners ---

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, change: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, change)
            except Exception:
                logger.exception("GAME: listener failed on %s", change)

    # --- seeding from the directory ---

    def seed(self, snapshot: SessionSnapshot, assigned_color: Color) -> None:
        """Replace the mirror with a snapshot returned by create/join/rejoin."""
        if snapshot.session_id != self.session_id:
            if self.session_id is not None:
                self.chat = ChatLog()
            self.last_move = None
            self.remaining_ms = None
            self._opponent_name = None
        self.session_id = snapshot.session_id
        self.status = snapshot.status
        self.white = snapshot.white
        self.black = snapshot.black
        self.confirmed_position = rules.normalize(snapshot.position)
        self.turn_count = snapshot.turn_count
        if snapshot.invite_code:
            self.invite_code = snapshot.invite_code
        self.local_color = assigned_color
        self._pending = None
        self.outcome = None
        if snapshot.status == Status.FINISHED:
            self.outcome = self._outcome_from_result(snapshot.result, "authority")
        logger.info(
            "GAME: seeded session=%s color=%s status=%s moves=%s",
            self.session_id, assigned_color, self.status, self.turn_count,
        )
        self._notify("seeded")

    # --- inbound hub events ---

    def _is_foreign(self, session_id: str | None) -> bool:
        if self.session_id is None:
            return True
        return session_id is not None and session_id != self.session_id

    def _authoritatively_finished(self) -> bool:
        return self.status == Status.FINISHED and not (self.outcome and self.outcome.provisional)

    def _on_game_started(self, payload: Any = None) -> None:
        ev = SessionStarted.from_payload(payload)
        if self._is_foreign(ev.session_id):
            return
        if self._authoritatively_finished():
            logger.info("GAME: GameStarted ignored, session %s already finished", self.session_id)
            return
        self.white, self.black = ev.white, ev.black
        if self.white is not None and self.white.player_id == self.identity.player_id:
            self.local_color = Color.WHITE
        elif self.black is not None and self.black.player_id == self.identity.player_id:
            self.local_color = Color.BLACK
        if self.white is None or self.black is None:
            logger.warning("GAME: GameStarted without both players: %s", payload)
        self.status = Status.PLAYING
        self.confirmed_position = rules.normalize(ev.position)
        self.turn_count = 0
        self.last_move = None
        self._pending = None
        self.outcome = None
        self.remaining_ms = None
        logger.info("GAME: started session=%s local=%s", self.session_id, self.local_color)
        self._notify("started")

    def _on_move_made(self, payload: Any = None) -> None:
        ev = MoveApplied.from_payload(payload)
        if self._is_foreign(ev.session_id):
            return
        if self._authoritatively_finished():
            logger.info("GAME: MoveMade ignored, session %s already finished", self.session_id)
            return
        if ev.position:
            self.confirmed_position = rules.normalize(ev.position)
        if ev.from_sq and ev.to_sq:
            self.last_move = (ev.from_sq, ev.to_sq)
        self.turn_count = ev.move_number if ev.move_number is not None else self.turn_count + 1
        if ev.white_remaining_ms is not None and ev.black_remaining_ms is not None:
            self.remaining_ms = (int(ev.white_remaining_ms), int(ev.black_remaining_ms))
        if self._pending is not None:
            logger.debug("GAME: authoritative move replaced pending %s", self._pending.move.uci)
        self._pending = None
        self._reopen_if_provisional(mover=rules.turn_owner(self.confirmed_position).opponent)
        if self.status != Status.FINISHED:
            self.status = Status.PLAYING
        self._finish_from_position(ev.result)
        self._notify("move")

    def _on_player_joined(self, payload: Any = None) -> None:
        ev = PlayerJoinedOpponent.from_payload(payload)
        if self._is_foreign(ev.session_id) or ev.player is None or not ev.player.display_name:
            return
        if ev.player.player_id and ev.player.player_id == self.identity.player_id:
            return
        self._opponent_name = ev.player.display_name
        if self.local_color is not None:
            side = self.local_color.opponent
            seat = self.players[side]
            if seat is not None:
                setattr(self, side.value, replace(seat, display_name=ev.player.display_name))
        logger.info("GAME: opponent is %s", ev.player.display_name)
        self._notify("opponent")

    def _on_game_message(self, payload: Any = None) -> None:
        ev = ChatPosted.from_payload(payload)
        if self._is_foreign(ev.session_id):
            return
        self.chat.append(ChatMessage(sender=ev.sender, text=ev.text, sent_at=ev.timestamp))
        self._notify("chat")

    def _on_game_ended(self, payload: Any = None) -> None:
        ev = GameEnded.from_payload(payload)
        if self._is_foreign(ev.session_id):
            return
        if self._authoritatively_finished():
            logger.info("GAME: GameEnded ignored, session %s already finished", self.session_id)
            return
        if ev.position:
            self.confirmed_position = rules.normalize(ev.position)
        self._pending = None
        self._finish(Outcome(winner=ev.winner, reason=ev.reason))

    # --- outcome handling ---

    def _finish(self, outcome: Outcome) -> None:
        self.status = Status.FINISHED
        self.outcome = outcome
        logger.info(
            "GAME: finished session=%s winner=%s reason=%s%s",
            self.session_id, outcome.winner or "draw", outcome.reason,
            " (provisional)" if outcome.provisional else "",
        )
        self._notify("finished")

    def _reopen_if_provisional(self, mover: Color) -> None:
        """Only a move by the flagged side proves its clock had not run out."""
        if self.status != Status.FINISHED or not (self.outcome and self.outcome.provisional):
            return
        loser = self.outcome.winner.opponent if self.outcome.winner else None
        if mover != loser:
            return
        logger.info("GAME: hub overrides local %s, game continues", self.outcome.reason)
        self.status = Status.PLAYING
        self.outcome = None

    def _finish_from_position(self, result: str | None = None) -> None:
        if result in RESULT_WINNERS:
            terminal = rules.is_terminal(self.confirmed_position)
            reason = terminal.value if terminal != rules.Terminal.NONE else "authority"
            self._finish(Outcome(winner=RESULT_WINNERS[result], reason=reason))
            return
        terminal = rules.is_terminal(self.confirmed_position)
        if terminal == rules.Terminal.CHECKMATE:
            loser = rules.turn_owner(self.confirmed_position)
            self._finish(Outcome(winner=loser.opponent, reason=terminal.value))
        elif terminal != rules.Terminal.NONE:
            self._finish(Outcome(winner=None, reason=terminal.value))

    def _outcome_from_result(self, result: str | None, reason: str) -> Outcome:
        winner = parse_color(result)
        if winner is None and result in RESULT_WINNERS:
            winner = RESULT_WINNERS[result]
        return Outcome(winner=winner, reason=reason)

    def declare_timeout(self, loser: Color) -> None:
        """Local flag fall. Provisional until the hub says otherwise."""
        if self.status != Status.PLAYING:
            return
        self._finish(Outcome(winner=loser.opponent, reason="timeout", provisional=True))

    # --- outbound intents ---

    async def propose_move(self, from_sq: str, to_sq: str, promotion: str | None = None) -> MoveResult:
        """
        Apply a local move optimistically and submit it to the hub.

        Raises IllegalMoveLocal (or a subclass) before any network call when
        the move cannot be made, and MoveRejectedByAuthority after rolling
        back when the hub refuses it.
        """
        if self._pending is not None:
            raise MovePending(f"move {self._pending.move.uci} is still waiting for the server")
        if self.status != Status.PLAYING or not self.is_local_turn:
            raise NotYourTurn("not your turn")
        before = self.confirmed_position
        try:
            after = rules.apply_move(before, from_sq, to_sq, promotion)
        except ValueError as e:
            raise IllegalMoveLocal(f"illegal move {from_sq}{to_sq}") from e

        move = Move(from_sq, to_sq, promotion)
        pending = PendingMove(move=move, position=after, previous_last_move=self.last_move)
        self._pending = pending
        self.last_move = (from_sq, to_sq)
        self._notify("pending")

        try:
            result = await self._connection.invoke(
                MAKE_MOVE, self.session_id, from_sq, to_sq, promotion, after
            )
        except (TransportError, InvocationError) as e:
            self._rollback(pending)
            raise MoveRejectedByAuthority(str(e) or "could not send move") from e
        if not field(result, "success"):
            reason = field(result, "message") or "move rejected by server"
            self._rollback(pending)
            raise MoveRejectedByAuthority(reason)
        return self._confirm(pending, field(result, "fen"))

    def _rollback(self, pending: PendingMove) -> None:
        if self._pending is not pending:
            # the hub already overwrote the mirror while we waited
            return
        self._pending = None
        self.last_move = pending.previous_last_move
        logger.warning("GAME: move %s rolled back", pending.move.uci)
        self._notify("rollback")

    def _confirm(self, pending: PendingMove, fen: str | None) -> MoveResult:
        if self._pending is not pending:
            return MoveResult(pending.move, self.confirmed_position)
        self._pending = None
        if self._authoritatively_finished():
            return MoveResult(pending.move, self.confirmed_position)
        position = rules.normalize(fen) if fen else pending.position
        corrected = position != pending.position
        if corrected:
            logger.warning("GAME: server position differs after %s, using server's", pending.move.uci)
        self.confirmed_position = position
        self.turn_count += 1
        self._notify("confirmed")
        self._finish_from_position()
        return MoveResult(pending.move, position, corrected)

    async def send_chat(self, text: str) -> bool:
        text = text.strip()
        if not text or self.session_id is None:
            return False
        try:
            result = await self._connection.invoke(SEND_GAME_MESSAGE, self.session_id, text)
        except (TransportError, InvocationError) as e:
            raise ChatError(str(e) or "could not send message") from e
        if isinstance(result, dict) and field(result, "success") is False:
            raise ChatError(field(result, "message") or "message rejected")
        return True
