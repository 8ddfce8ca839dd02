"""
Hub connection: one long-lived websocket shared by every screen.

Create a single ConnectionManager per process and pass it to the directory
and game session objects. Navigation never closes it; only close() does.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import WebSocketException

from . import protocol
from .config import get_config
from .constants import RECONNECT_DELAYS, ConnectionState
from .errors import HandshakeError, InvocationError, TransportError

logger = logging.getLogger(__name__)

EventHandler = Callable[..., Any]
StateListener = Callable[[ConnectionState, ConnectionState], Any]
Connector = Callable[[str], Awaitable[Any]]


async def websocket_connector(url: str):
    return await websockets.connect(url, open_timeout=10)


class ConnectionManager:
    def __init__(
        self,
        config=None,
        connector: Connector | None = None,
        reconnect_delays: list[float] | None = None,
    ):
        self._config = config or get_config()
        self._connector = connector or websocket_connector
        self._delays = list(reconnect_delays if reconnect_delays is not None else RECONNECT_DELAYS)
        self._state = ConnectionState.DISCONNECTED
        self._ws = None
        self._reader = protocol.RecordReader()
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._state_listeners: list[StateListener] = []
        self._pending: dict[str, asyncio.Future] = {}
        self._next_id = 0
        self._supervisor: asyncio.Task | None = None
        self._first_attempt: asyncio.Future | None = None
        self._closing = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    # --- lifecycle ---

    async def connect(self) -> None:
        """
        Open the hub channel unless one is already live.
        Raises TransportError if the first attempt fails; retries continue
        in the background.
        """
        if self._supervisor is None or self._supervisor.done():
            self._closing = False
            self._first_attempt = asyncio.get_running_loop().create_future()
            self._set_state(ConnectionState.CONNECTING)
            self._supervisor = asyncio.create_task(self._supervise())
        if self._first_attempt is not None and not self._first_attempt.done():
            error = await asyncio.shield(self._first_attempt)
            if error is not None:
                raise error
            return
        if self._state != ConnectionState.CONNECTED:
            raise TransportError(f"hub is {self._state}")

    async def close(self) -> None:
        """Tear the channel down for good. Only the owning surface should call this."""
        self._closing = True
        task, self._supervisor = self._supervisor, None
        ws, self._ws = self._ws, None
        if ws is not None:
            await _close_quietly(ws)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._fail_pending(TransportError("connection closed"))
        self._resolve_first(TransportError("connection closed"))
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("HUB: closed")

    # --- calls ---

    async def invoke(self, method: str, *args: Any) -> Any:
        """Call a hub method and wait for its completion."""
        ws = self._require_channel(method)
        self._next_id += 1
        invocation_id = str(self._next_id)
        fut = asyncio.get_running_loop().create_future()
        self._pending[invocation_id] = fut
        try:
            try:
                await ws.send(protocol.invocation(method, list(args), invocation_id))
            except (WebSocketException, OSError) as e:
                raise TransportError(f"{method}: {e}") from e
            logger.debug("HUB: invoke %s id=%s", method, invocation_id)
            return await fut
        finally:
            self._pending.pop(invocation_id, None)

    async def send(self, method: str, *args: Any) -> None:
        """Fire-and-forget invocation; the hub sends no completion."""
        ws = self._require_channel(method)
        try:
            await ws.send(protocol.invocation(method, list(args)))
        except (WebSocketException, OSError) as e:
            raise TransportError(f"{method}: {e}") from e

    # --- events ---

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._state_listeners:
            self._state_listeners.remove(listener)

    # --- internals ---

    def _require_channel(self, method: str):
        if self._state != ConnectionState.CONNECTED or self._ws is None:
            raise TransportError(f"cannot call {method}: hub is {self._state}")
        return self._ws

    def _delay(self, attempt: int) -> float:
        if not self._delays:
            return 0
        return self._delays[min(attempt, len(self._delays) - 1)]

    async def _supervise(self) -> None:
        attempt = 0
        while not self._closing:
            try:
                ws, leftover = await self._open()
            except (WebSocketException, OSError, TransportError) as e:
                logger.warning("HUB: connect failed (attempt %s): %s", attempt + 1, e)
                self._resolve_first(e if isinstance(e, TransportError) else TransportError(str(e)))
                self._set_state(ConnectionState.RECONNECTING)
                await asyncio.sleep(self._delay(attempt))
                attempt += 1
                continue

            attempt = 0
            self._ws = ws
            self._set_state(ConnectionState.CONNECTED)
            self._resolve_first(None)
            keepalive = None
            if self._config.keepalive_interval > 0:
                keepalive = asyncio.create_task(self._keepalive(ws))
            try:
                for record in leftover:
                    self._dispatch(record)
                await self._read_loop(ws)
            finally:
                if keepalive is not None:
                    keepalive.cancel()
                if self._ws is ws:
                    self._ws = None
                    await _close_quietly(ws)
                self._fail_pending(TransportError("connection lost"))

            if self._closing:
                break
            logger.warning("HUB: connection lost, reconnecting")
            self._set_state(ConnectionState.RECONNECTING)
            await asyncio.sleep(self._delay(attempt))
            attempt += 1

    async def _open(self):
        logger.info("HUB: connecting to %s", self._config.hub_url)
        ws = await self._connector(self._config.hub_url)
        self._reader.reset()
        try:
            await ws.send(protocol.handshake())
            records = []
            while not records:
                records = self._reader.feed(await ws.recv())
        except BaseException:
            await _close_quietly(ws)
            raise
        response, leftover = records[0], records[1:]
        if response.get("error"):
            await _close_quietly(ws)
            raise HandshakeError(response["error"])
        logger.info("HUB: handshake ok")
        return ws, leftover

    async def _read_loop(self, ws) -> None:
        try:
            while True:
                raw = await ws.recv()
                for record in self._reader.feed(raw):
                    if not self._dispatch(record):
                        return
        except (WebSocketException, OSError) as e:
            logger.info("HUB: channel dropped: %s", e)
        except Exception:
            # anything else is treated as a drop so the supervisor reconnects
            logger.exception("HUB: reader failed")

    async def _keepalive(self, ws) -> None:
        while True:
            await asyncio.sleep(self._config.keepalive_interval)
            try:
                await ws.send(protocol.ping())
            except (WebSocketException, OSError) as e:
                logger.debug("HUB: ping failed: %s", e)
                return

    def _dispatch(self, record: dict[str, Any]) -> bool:
        """Route one record. Returns False when the hub asked to close."""
        t = record.get("type")
        if t == protocol.INVOCATION:
            target, args = record.get("target"), record.get("arguments") or []
            if not isinstance(target, str) or not isinstance(args, list):
                logger.warning("HUB: malformed invocation dropped: %r", record)
            else:
                self._emit(target, args)
        elif t == protocol.COMPLETION:
            invocation_id = record.get("invocationId")
            fut = self._pending.get(invocation_id) if isinstance(invocation_id, str) else None
            if fut is None or fut.done():
                logger.debug("HUB: completion for unknown id=%r", invocation_id)
            elif record.get("error"):
                fut.set_exception(InvocationError(record["error"]))
            else:
                fut.set_result(record.get("result"))
        elif t == protocol.PING:
            pass
        elif t == protocol.CLOSE:
            logger.warning("HUB: server closed the channel: %s", record.get("error") or "no reason")
            return False
        else:
            logger.debug("HUB: ignoring record type=%s", t)
        return True

    def _emit(self, event: str, args: list[Any]) -> None:
        handlers = list(self._handlers.get(event, ()))
        if not handlers:
            logger.debug("HUB: no handler for %s", event)
        for handler in handlers:
            try:
                handler(*args)
            except Exception:
                logger.exception("HUB: handler for %s failed", event)

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if old == new:
            return
        self._state = new
        logger.info("HUB: %s -> %s", old, new)
        for listener in list(self._state_listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("HUB: state listener failed")

    def _resolve_first(self, error: TransportError | None) -> None:
        if self._first_attempt is not None and not self._first_attempt.done():
            self._first_attempt.set_result(error)

    def _fail_pending(self, error: TransportError) -> None:
        pending, self._pending = self._pending, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(error)


async def _close_quietly(ws) -> None:
    try:
        await ws.close()
    except (WebSocketException, OSError) as e:
        logger.debug("HUB: close failed: %s", e)
