"""
Terminal client: create a game, join one by invite code, or resume the last one.
"""
import argparse
import asyncio
import logging
import sys

from . import rules
from .clock import Clock, format_time
from .config import get_config
from .connection import ConnectionManager
from .constants import TIME_CONTROL_KEYS, Color, ConnectionState, Status, time_control_for
from .directory import SessionDirectory
from .errors import ChessLinkError, IllegalMoveLocal, TransportError
from .identity import IdentityStore
from .session import GameSession

logger = logging.getLogger(__name__)

HELP = "moves: e2e4, e7e8q | /say <text> | /board | /quit"


def setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="chesslink", description="Play a chess game against a friend.")
    parser.add_argument("--time-control", choices=TIME_CONTROL_KEYS, default=None, help="clock preset, e.g. 3+2")
    sub = parser.add_subparsers(dest="command", required=True)
    create = sub.add_parser("create", help="create a game and print its invite code")
    create.add_argument("--name", default="", help="game name")
    join = sub.add_parser("join", help="join a game by invite code")
    join.add_argument("code")
    sub.add_parser("resume", help="rejoin the last game")
    return parser.parse_args(argv)


def render(session: GameSession, clock: Clock) -> str:
    white = format_time(clock.time_remaining[Color.WHITE])
    black = format_time(clock.time_remaining[Color.BLACK])
    turn = "you" if session.is_local_turn else session.opponent_name
    lines = [
        str(rules.board_for(session.position)),
        f"status={session.status} move={session.turn_count} turn={turn} white={white} black={black}",
    ]
    if session.outcome is not None:
        winner = session.outcome.winner or "draw"
        lines.append(f"game over: {winner} ({session.outcome.reason})")
    return "\n".join(lines)


async def wait_connected(connection: ConnectionManager) -> None:
    if connection.is_connected:
        return
    ready = asyncio.Event()

    def listener(old, new):
        if new == ConnectionState.CONNECTED:
            ready.set()

    connection.add_state_listener(listener)
    try:
        await ready.wait()
    finally:
        connection.remove_state_listener(listener)


async def handle_line(line: str, session: GameSession, clock: Clock) -> bool:
    """Process one input line. Returns False to quit."""
    line = line.strip()
    if not line:
        return True
    if line == "/quit":
        return False
    if line == "/board":
        print(render(session, clock))
        return True
    if line.startswith("/say"):
        await session.send_chat(line[4:])
        return True
    if len(line) not in (4, 5):
        print(HELP)
        return True
    try:
        await session.propose_move(line[:2], line[2:4], line[4:] or None)
    except IllegalMoveLocal as e:
        print(f"! {e}")
    return True


async def run(args: argparse.Namespace) -> int:
    config = get_config()
    store = IdentityStore()
    identity = store.identity()
    connection = ConnectionManager(config)
    session = GameSession(connection, identity)
    directory = SessionDirectory(connection, store, session)
    clock = Clock(session, time_control_for(args.time_control or config.time_control), connection=connection)

    def on_change(s: GameSession, change: str) -> None:
        if change == "chat" and s.chat.last is not None:
            msg = s.chat.last
            print(f"[{msg.display_time}] {msg.sender}: {msg.text}")
        elif change != "pending":
            print(render(s, clock))

    session.add_listener(on_change)
    if args.command in ("create", "join"):
        directory.forget()
    elif store.last_session() is None:
        print("no game to resume")
        return 1

    try:
        try:
            await connection.connect()
        except TransportError as e:
            logger.warning("hub unavailable (%s), retrying in background", e)
            await wait_connected(connection)

        if args.command == "create":
            created = await directory.create_session(args.name or f"{identity.display_name}'s Game")
            print(f"invite code: {created.invite_code}  room: {created.session_id}")
        elif args.command == "join":
            await directory.join_by_invite_code(args.code)
        elif directory.rejoin_task is not None:
            await directory.rejoin_task

        print(HELP)
        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            try:
                if not await handle_line(line, session, clock):
                    break
            except ChessLinkError as e:
                print(f"! {e}")
            if session.status == Status.FINISHED and not (session.outcome and session.outcome.provisional):
                directory.forget()
    except ChessLinkError as e:
        print(f"! {e}")
        return 1
    finally:
        clock.close()
        session.detach()
        directory.detach()
        await connection.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(get_config().debug)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
