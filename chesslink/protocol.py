"""
JSON hub protocol framing.

Every record is a JSON object followed by the 0x1e record separator.
A websocket frame may hold several records or only part of one.
"""
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

RECORD_SEPARATOR = "\x1e"

INVOCATION = 1
COMPLETION = 3
PING = 6
CLOSE = 7

HANDSHAKE_REQUEST = {"protocol": "json", "version": 1}


def encode(message: dict[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":")) + RECORD_SEPARATOR


def handshake() -> str:
    return encode(HANDSHAKE_REQUEST)


def invocation(target: str, arguments: list[Any], invocation_id: str | None = None) -> str:
    msg: dict[str, Any] = {"type": INVOCATION, "target": target, "arguments": arguments}
    if invocation_id is not None:
        msg["invocationId"] = invocation_id
    return encode(msg)


def ping() -> str:
    return encode({"type": PING})


class RecordReader:
    """Splits incoming frames into decoded records, buffering a partial tail."""

    def __init__(self):
        self._buffer = ""

    def feed(self, data: str | bytes) -> list[dict[str, Any]]:
        if isinstance(data, bytes):
            try:
                data = data.decode("utf-8")
            except UnicodeDecodeError as e:
                logger.warning("HUB: undecodable frame dropped: %s", e)
                return []
        self._buffer += data
        *complete, self._buffer = self._buffer.split(RECORD_SEPARATOR)
        records = []
        for raw in complete:
            if not raw:
                continue
            try:
                record = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning("HUB: invalid JSON record dropped: %s", e)
                continue
            if not isinstance(record, dict):
                logger.warning("HUB: non-object record dropped: %r", record)
                continue
            records.append(record)
        return records

    def reset(self) -> None:
        self._buffer = ""
