"""Client configuration."""
import os
from functools import lru_cache
from pathlib import Path

DEFAULT_HUB_URL = "ws://localhost:5131/chessHub"
DEFAULT_STATE_PATH = Path.home() / ".chesslink" / "state.json"


def make_config(**overrides):
    values = {
        "hub_url": os.environ.get("CHESSLINK_HUB_URL", DEFAULT_HUB_URL),
        "state_path": Path(os.environ.get("CHESSLINK_STATE_PATH", str(DEFAULT_STATE_PATH))),
        "player_name": os.environ.get("CHESSLINK_PLAYER_NAME", ""),
        "time_control": os.environ.get("CHESSLINK_TIME_CONTROL", "5+0"),
        "keepalive_interval": float(os.environ.get("CHESSLINK_KEEPALIVE", "15")),
        "debug": os.environ.get("CHESSLINK_DEBUG", "0").lower() in ("1", "true", "yes"),
    }
    values.update(overrides)
    return type("Config", (), values)()


@lru_cache
def get_config():
    return make_config()
