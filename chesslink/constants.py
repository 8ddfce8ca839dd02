"""Game modes, hub contract names and client-wide enums."""
from enum import StrEnum
from typing import TypedDict


class TimeControl(TypedDict):
    initial_seconds: int
    increment_seconds: int
    key: str


TIME_CONTROLS: list[TimeControl] = [
    {"key": "5+0", "initial_seconds": 5 * 60, "increment_seconds": 0},
    {"key": "3+0", "initial_seconds": 3 * 60, "increment_seconds": 0},
    {"key": "3+2", "initial_seconds": 3 * 60, "increment_seconds": 2},
    {"key": "5+3", "initial_seconds": 5 * 60, "increment_seconds": 3},
    {"key": "10+0", "initial_seconds": 10 * 60, "increment_seconds": 0},
    {"key": "15+10", "initial_seconds": 15 * 60, "increment_seconds": 10},
]

TIME_CONTROL_KEYS = [tc["key"] for tc in TIME_CONTROLS]


def time_control_for(key: str | None) -> TimeControl:
    for tc in TIME_CONTROLS:
        if tc["key"] == key:
            return tc
    return TIME_CONTROLS[0]


class Color(StrEnum):
    WHITE = "white"
    BLACK = "black"

    @property
    def opponent(self) -> "Color":
        return Color.BLACK if self is Color.WHITE else Color.WHITE


class Status(StrEnum):
    WAITING = "waiting"
    PLAYING = "playing"
    FINISHED = "finished"


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


# Hub methods (client -> authority)
CREATE_GAME = "CreateGame"
JOIN_BY_INVITE_CODE = "JoinByInviteCode"
ENSURE_JOINED = "EnsureJoined"
MAKE_MOVE = "MakeMove"
SEND_GAME_MESSAGE = "SendGameMessage"

# Hub events (authority -> client)
EVENT_GAME_STARTED = "GameStarted"
EVENT_MOVE_MADE = "MoveMade"
EVENT_PLAYER_JOINED = "PlayerJoined"
EVENT_GAME_MESSAGE = "GameMessage"
EVENT_GAME_ENDED = "GameEnded"

# Seconds to wait before each reconnect attempt; the last value repeats forever.
RECONNECT_DELAYS: list[float] = [0, 2, 5, 10]

INVITE_CODE_LENGTH = 8

START_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"
