"""
Typed inbound hub events.

The hub serializes with camelCase but older builds send PascalCase,
so every field is read under both spellings.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .constants import Color

logger = logging.getLogger(__name__)

RESULT_WINNERS: dict[str, Color | None] = {
    "1-0": Color.WHITE,
    "0-1": Color.BLACK,
    "1/2-1/2": None,
}


def field(data: Any, name: str, default: Any = None) -> Any:
    """Read `name` from a payload in camelCase or PascalCase."""
    if not isinstance(data, dict):
        return default
    if name in data:
        return data[name]
    pascal = name[:1].upper() + name[1:]
    return data.get(pascal, default)


def parse_color(value: Any) -> Color | None:
    if isinstance(value, str) and value.lower() in (Color.WHITE, Color.BLACK):
        return Color(value.lower())
    return None


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("EVT: unparseable timestamp %r", value)
    return datetime.now(timezone.utc)


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class PlayerRef:
    player_id: str
    display_name: str

    @classmethod
    def from_payload(cls, data: Any) -> "PlayerRef | None":
        if not isinstance(data, dict):
            return None
        player_id = field(data, "userId") or field(data, "playerId")
        name = field(data, "username") or field(data, "displayName") or ""
        if not player_id and not name:
            return None
        return cls(player_id=str(player_id or ""), display_name=name)


@dataclass(frozen=True)
class SessionStarted:
    session_id: str | None
    white: PlayerRef | None
    black: PlayerRef | None
    position: str | None

    @classmethod
    def from_payload(cls, data: Any) -> "SessionStarted":
        return cls(
            session_id=field(data, "roomId"),
            white=PlayerRef.from_payload(field(data, "whitePlayer")),
            black=PlayerRef.from_payload(field(data, "blackPlayer")),
            position=field(data, "board") or field(data, "fen"),
        )


@dataclass(frozen=True)
class MoveApplied:
    session_id: str | None
    position: str | None
    from_sq: str | None
    to_sq: str | None
    move_number: int | None
    result: str | None = None
    white_remaining_ms: int | None = None
    black_remaining_ms: int | None = None

    @classmethod
    def from_payload(cls, data: Any) -> "MoveApplied":
        return cls(
            session_id=field(data, "roomId"),
            position=field(data, "fen"),
            from_sq=field(data, "from"),
            to_sq=field(data, "to"),
            move_number=_int_or_none(field(data, "moveNumber")),
            result=field(data, "result"),
            white_remaining_ms=field(data, "whiteRemainingMs"),
            black_remaining_ms=field(data, "blackRemainingMs"),
        )


@dataclass(frozen=True)
class PlayerJoinedOpponent:
    session_id: str | None
    player: PlayerRef | None

    @classmethod
    def from_payload(cls, data: Any) -> "PlayerJoinedOpponent":
        player = PlayerRef.from_payload(field(data, "player"))
        if player is None:
            player = PlayerRef.from_payload(data)
        return cls(session_id=field(data, "roomId"), player=player)


@dataclass(frozen=True)
class ChatPosted:
    session_id: str | None
    sender: str
    text: str
    timestamp: datetime

    @classmethod
    def from_payload(cls, data: Any) -> "ChatPosted":
        return cls(
            session_id=field(data, "roomId"),
            sender=field(data, "sender") or "Unknown",
            text=field(data, "text") or "",
            timestamp=parse_timestamp(field(data, "timestamp")),
        )


@dataclass(frozen=True)
class GameEnded:
    session_id: str | None
    winner: Color | None
    reason: str
    position: str | None = None

    @classmethod
    def from_payload(cls, data: Any) -> "GameEnded":
        result = field(data, "result")
        winner = parse_color(field(data, "winner"))
        if winner is None and result in RESULT_WINNERS:
            winner = RESULT_WINNERS[result]
        return cls(
            session_id=field(data, "roomId"),
            winner=winner,
            reason=field(data, "reason") or "authority",
            position=field(data, "fen"),
        )
