"""
Per-device player identity and the last joined session.

Both live in one small JSON file so they survive restarts of the client.
"""
import json
import logging
import os
import random
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import get_config
from .constants import Color

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlayerIdentity:
    player_id: str
    display_name: str


@dataclass(frozen=True)
class StoredSession:
    session_id: str
    assigned_color: Color


class IdentityStore:
    def __init__(self, path: Path | str | None = None, default_name: str | None = None):
        config = get_config()
        self.path = Path(path) if path is not None else config.state_path
        self._default_name = default_name if default_name is not None else config.player_name
        self._identity: PlayerIdentity | None = None

    def identity(self) -> PlayerIdentity:
        """Return the stored identity, creating it on first use."""
        if self._identity is not None:
            return self._identity
        data = self._load()
        player_id = data.get("player_id")
        name = data.get("player_name")
        if not player_id or not name:
            player_id = player_id or str(uuid.uuid4())
            name = name or self._default_name or f"Player_{random.randrange(1000)}"
            data.update(player_id=player_id, player_name=name)
            self._save(data)
            logger.info("ID: created identity %s (%s)", player_id, name)
        self._identity = PlayerIdentity(player_id=player_id, display_name=name)
        return self._identity

    def last_session(self) -> StoredSession | None:
        data = self._load()
        room_id = data.get("last_room_id")
        color = data.get("last_player_color")
        if not room_id or color not in (Color.WHITE, Color.BLACK):
            return None
        return StoredSession(session_id=room_id, assigned_color=Color(color))

    def remember_session(self, session_id: str, color: Color) -> None:
        data = self._load()
        data.update(last_room_id=session_id, last_player_color=str(color))
        self._save(data)

    def forget_session(self) -> None:
        data = self._load()
        if data.pop("last_room_id", None) is not None:
            data.pop("last_player_color", None)
            self._save(data)

    def _load(self) -> dict[str, Any]:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("ID: unreadable state file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self.path)
