"""Client error taxonomy."""


class ChessLinkError(Exception):
    """Base class for every error raised by the client."""


class TransportError(ChessLinkError):
    """The hub channel is unavailable or dropped while a call was in flight."""


class HandshakeError(TransportError):
    pass


class InvocationError(ChessLinkError):
    """The hub answered an invocation with an error completion."""


class DirectoryError(ChessLinkError):
    pass


class CreateRejected(DirectoryError):
    pass


class InviteNotFound(DirectoryError):
    pass


class InviteExpired(DirectoryError):
    pass


class RejoinRejected(DirectoryError):
    pass


class IllegalMoveLocal(ChessLinkError):
    """Move refused locally; nothing was sent to the hub."""


class NotYourTurn(IllegalMoveLocal):
    pass


class MovePending(IllegalMoveLocal):
    pass


class MoveRejectedByAuthority(ChessLinkError):
    """The hub refused a move; the mirror has already been rolled back."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ChatError(ChessLinkError):
    pass


class Timeout(ChessLinkError):
    """A side ran out of time on the local clock."""
