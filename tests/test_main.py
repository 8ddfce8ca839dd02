"""Tests for the terminal front end in chesslink/main.py"""

import pytest

from chesslink.clock import Clock
from chesslink.constants import SEND_GAME_MESSAGE, Color, time_control_for
from chesslink.main import handle_line, parse_args, render
from chesslink.session import GameSession

from conftest import ROOM_ID, StubConnection, seed_playing


def test_parse_args() -> None:
    args = parse_args(["--time-control", "3+2", "join", "a1b2c3d4"])
    assert (args.command, args.code, args.time_control) == ("join", "a1b2c3d4", "3+2")

    assert parse_args(["create", "--name", "Friday"]).name == "Friday"
    assert parse_args(["resume"]).time_control is None
    with pytest.raises(SystemExit):
        parse_args(["--time-control", "1+1", "resume"])


@pytest.mark.asyncio
async def test_handle_line(session: GameSession, stub: StubConnection, capsys) -> None:
    seed_playing(session)
    clock = Clock(session, time_control_for("5+0"), tick_interval=60, connection=stub)

    assert await handle_line("/say  hello", session, clock)
    stub.invoke.assert_awaited_once_with(SEND_GAME_MESSAGE, ROOM_ID, "hello")

    assert await handle_line("e2e5", session, clock)
    assert "illegal move" in capsys.readouterr().out

    assert await handle_line("/board", session, clock)
    assert "turn=you" in capsys.readouterr().out

    assert not await handle_line("/quit", session, clock)
    clock.close()


def test_render_shows_outcome(session: GameSession, stub: StubConnection) -> None:
    seed_playing(session, Color.BLACK)
    clock = Clock(session, time_control_for("3+0"), connection=stub)
    session.declare_timeout(Color.WHITE)

    text = render(session, clock)

    assert "white=3:00 black=3:00" in text
    assert "game over: black (timeout)" in text
    clock.close()
