"""
Local rules checks over python-chess.
Advisory only: the hub decides what actually happened.
"""
from enum import StrEnum

import chess
from chess import Board

from .constants import START_FEN, Color


class Terminal(StrEnum):
    NONE = "none"
    CHECKMATE = "checkmate"
    STALEMATE = "stalemate"
    DRAW = "draw"


def normalize(position: str | None) -> str:
    """The hub sends "start" (or nothing) for the initial position."""
    if not position or position == "start":
        return START_FEN
    return position


def board_for(position: str | None) -> Board:
    return Board(normalize(position))


def turn_owner(position: str | None) -> Color:
    parts = normalize(position).split()
    return Color.BLACK if len(parts) > 1 and parts[1] == "b" else Color.WHITE


def resolve_move(board: Board, from_sq: str, to_sq: str, promotion: str | None = None) -> chess.Move | None:
    """Build a move, promoting to a queen when a pawn reaches the last rank without a choice."""
    uci = from_sq + to_sq + (promotion or "")
    try:
        move = chess.Move.from_uci(uci)
    except ValueError:
        return None
    if move.promotion is None and board.piece_type_at(move.from_square) == chess.PAWN:
        if chess.square_rank(move.to_square) in (0, 7):
            return chess.Move(move.from_square, move.to_square, promotion=chess.QUEEN)
    return move


def is_legal_move(position: str | None, from_sq: str, to_sq: str, promotion: str | None = None) -> bool:
    try:
        board = board_for(position)
    except ValueError:
        return False
    move = resolve_move(board, from_sq, to_sq, promotion)
    return move is not None and move in board.legal_moves


def apply_move(position: str | None, from_sq: str, to_sq: str, promotion: str | None = None) -> str:
    """Return the FEN after the move. Raises ValueError if it is not legal."""
    board = board_for(position)
    move = resolve_move(board, from_sq, to_sq, promotion)
    if move is None or move not in board.legal_moves:
        raise ValueError(f"illegal move {from_sq}{to_sq}{promotion or ''} in {board.fen()}")
    board.push(move)
    return board.fen()


def legal_destinations(position: str | None, square: str) -> set[str]:
    board = board_for(position)
    try:
        origin = chess.parse_square(square)
    except ValueError:
        return set()
    return {chess.square_name(m.to_square) for m in board.legal_moves if m.from_square == origin}


def all_destinations(position: str | None) -> dict[str, set[str]]:
    """Every movable square of the side to move, mapped to its targets."""
    board = board_for(position)
    dests: dict[str, set[str]] = {}
    for m in board.legal_moves:
        dests.setdefault(chess.square_name(m.from_square), set()).add(chess.square_name(m.to_square))
    return dests


def is_terminal(position: str | None) -> Terminal:
    board = board_for(position)
    if board.is_checkmate():
        return Terminal.CHECKMATE
    if board.is_stalemate():
        return Terminal.STALEMATE
    if board.is_insufficient_material() or board.can_claim_fifty_moves():
        return Terminal.DRAW
    return Terminal.NONE
