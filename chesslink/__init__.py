"""
chesslink: client for two-player chess sessions on a remote hub.
"""
from .chat import ChatLog, ChatMessage
from .clock import Clock, ClockState
from .connection import ConnectionManager
from .directory import CreatedSession, JoinedSession, SessionDirectory
from .identity import IdentityStore, PlayerIdentity
from .session import BoardView, GameSession, SessionSnapshot

__all__ = [
    "BoardView",
    "ChatLog",
    "ChatMessage",
    "Clock",
    "ClockState",
    "ConnectionManager",
    "CreatedSession",
    "GameSession",
    "IdentityStore",
    "JoinedSession",
    "PlayerIdentity",
    "SessionDirectory",
    "SessionSnapshot",
]
