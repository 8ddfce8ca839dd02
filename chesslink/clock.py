"""
Game clocks.

The running side is never stored: it is read off the session's turn owner
on every tick, so a move flips the clock as soon as the mirror changes.
"""
import asyncio
import logging
from dataclasses import dataclass

from .config import get_config
from .constants import Color, ConnectionState, Status, TimeControl, time_control_for
from .errors import Timeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClockState:
    time_remaining: dict[Color, float]
    active_side: Color | None


def format_time(seconds: float) -> str:
    total = max(0, int(seconds))
    return f"{total // 60}:{total % 60:02d}"


class Clock:
    def __init__(
        self,
        session,
        time_control: TimeControl | None = None,
        tick_interval: float = 1.0,
        connection=None,
    ):
        self._session = session
        self._connection = connection
        self.time_control = time_control or time_control_for(get_config().time_control)
        self.tick_interval = tick_interval
        self.time_remaining: dict[Color, float] = {}
        self.timed_out: Timeout | None = None
        self._frozen = connection is not None and connection.state != ConnectionState.CONNECTED
        self._task: asyncio.Task | None = None
        self._last_turn_owner: Color | None = None
        self._provisional_grant: Color | None = None
        self.reset()
        session.add_listener(self._on_session_change)
        if connection is not None:
            connection.add_state_listener(self._on_connection_state)

    @property
    def active_side(self) -> Color | None:
        if self._frozen or self._session.status != Status.PLAYING:
            return None
        return self._session.turn_owner

    @property
    def increment(self) -> float:
        return float(self.time_control["increment_seconds"])

    def state(self) -> ClockState:
        return ClockState(time_remaining=dict(self.time_remaining), active_side=self.active_side)

    def reset(self) -> None:
        initial = float(self.time_control["initial_seconds"])
        self.time_remaining = {Color.WHITE: initial, Color.BLACK: initial}
        self.timed_out = None
        self._provisional_grant = None
        self._last_turn_owner = self._session.turn_owner if self._session.status == Status.PLAYING else None

    def sync(self, white_ms: int, black_ms: int) -> None:
        """Take remaining times reported by the hub."""
        self.time_remaining[Color.WHITE] = max(0, white_ms) / 1000
        self.time_remaining[Color.BLACK] = max(0, black_ms) / 1000

    def tick(self, elapsed: float) -> None:
        side = self.active_side
        if side is None:
            return
        remaining = max(0.0, self.time_remaining[side] - elapsed)
        self.time_remaining[side] = remaining
        if remaining <= 0:
            self.timed_out = Timeout(f"{side} ran out of time")
            logger.info("CLOCK: %s flag fell", side)
            self._session.declare_timeout(side)

    # --- task ---

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def close(self) -> None:
        """Tear down: stop ticking and stop observing."""
        self.stop()
        self._session.remove_listener(self._on_session_change)
        if self._connection is not None:
            self._connection.remove_state_listener(self._on_connection_state)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        last = loop.time()
        while self._session.status == Status.PLAYING:
            await asyncio.sleep(self.tick_interval)
            now = loop.time()
            self.tick(now - last)
            last = now

    # --- observers ---

    def _on_session_change(self, session, change: str) -> None:
        owner = session.turn_owner if session.status == Status.PLAYING else None
        if change == "started":
            self.reset()
        elif change == "rollback":
            self._revoke_provisional_grant()
        elif change == "seeded":
            self._provisional_grant = None
        elif owner is not None and self._last_turn_owner is not None and owner != self._last_turn_owner:
            self._grant(self._last_turn_owner, provisional=change == "pending")
        elif change in ("move", "confirmed"):
            self._provisional_grant = None
        if change == "move" and session.remaining_ms is not None:
            self.sync(*session.remaining_ms)

        if owner is not None:
            self._last_turn_owner = owner
        if session.status == Status.PLAYING:
            self.start()
        else:
            self.stop()

    def _grant(self, side: Color, provisional: bool) -> None:
        if self.increment <= 0:
            return
        self.time_remaining[side] += self.increment
        self._provisional_grant = side if provisional else None
        logger.debug("CLOCK: +%ss to %s", self.increment, side)

    def _revoke_provisional_grant(self) -> None:
        side, self._provisional_grant = self._provisional_grant, None
        if side is not None:
            self.time_remaining[side] = max(0.0, self.time_remaining[side] - self.increment)

    def _on_connection_state(self, old: ConnectionState, new: ConnectionState) -> None:
        frozen = new != ConnectionState.CONNECTED
        if frozen != self._frozen:
            logger.info("CLOCK: %s", "frozen" if frozen else "resumed")
        self._frozen = frozen
