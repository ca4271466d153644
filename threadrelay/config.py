"""
ThreadRelay Configuration
"""
import os
import json
from dataclasses import dataclass
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "threadrelay.db"
_user_default_db = Path.home() / ".threadrelay" / "threadrelay.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}


def _flag(env_name: str, key: str, default: str) -> bool:
    return str(os.getenv(env_name, config_data.get(key, default))).lower() in {"1", "true", "yes"}


if os.getenv("THREADRELAY_DB"):
    DB_PATH = os.getenv("THREADRELAY_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    DB_PATH = str(_user_default_db)

# Transcript HTTP server - default to localhost only
HOST = os.getenv("THREADRELAY_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("THREADRELAY_PORT", config_data.get("PORT", "39780")))

# Public base URL of the transcript server, used for thread log links
SELF_URL = os.getenv("THREADRELAY_URL", config_data.get("URL", f"http://{HOST}:{PORT}")).rstrip("/")

# Show staff server nicknames instead of account usernames in replies
USE_NICKNAMES = _flag("THREADRELAY_USE_NICKNAMES", "USE_NICKNAMES", "true")

# Re-upload small user attachments to the staff channel instead of only linking them
RELAY_SMALL_ATTACHMENTS_AS_ATTACHMENTS = _flag(
    "THREADRELAY_RELAY_SMALL_ATTACHMENTS", "RELAY_SMALL_ATTACHMENTS_AS_ATTACHMENTS", "false"
)
SMALL_ATTACHMENT_LIMIT = int(os.getenv(
    "THREADRELAY_SMALL_ATTACHMENT_LIMIT", config_data.get("SMALL_ATTACHMENT_LIMIT", str(1024 * 1024 * 2))
))

# React to user messages once they have been relayed to staff
REACT_ON_SEEN = _flag("THREADRELAY_REACT_ON_SEEN", "REACT_ON_SEEN", "false")
REACT_ON_SEEN_EMOJI = os.getenv("THREADRELAY_REACT_ON_SEEN_EMOJI", config_data.get("REACT_ON_SEEN_EMOJI", "📨"))

# How often the scheduled close/suspend sweep runs (seconds)
SCHEDULER_INTERVAL = int(os.getenv("THREADRELAY_SCHEDULER_INTERVAL", config_data.get("SCHEDULER_INTERVAL", "30")))

RELAY_VERSION = "0.1.0"


@dataclass(frozen=True)
class RelaySettings:
    """Read-only toggles consumed by the relay engine."""
    use_nicknames: bool = True
    relay_small_attachments_as_attachments: bool = False
    small_attachment_limit: int = 1024 * 1024 * 2
    react_on_seen: bool = False
    react_on_seen_emoji: str = "📨"
    self_url: str = "http://127.0.0.1:39780"

    @classmethod
    def from_config(cls) -> "RelaySettings":
        return cls(
            use_nicknames=USE_NICKNAMES,
            relay_small_attachments_as_attachments=RELAY_SMALL_ATTACHMENTS_AS_ATTACHMENTS,
            small_attachment_limit=SMALL_ATTACHMENT_LIMIT,
            react_on_seen=REACT_ON_SEEN,
            react_on_seen_emoji=REACT_ON_SEEN_EMOJI,
            self_url=SELF_URL,
        )


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "URL": SELF_URL,
        "USE_NICKNAMES": USE_NICKNAMES,
        "RELAY_SMALL_ATTACHMENTS_AS_ATTACHMENTS": RELAY_SMALL_ATTACHMENTS_AS_ATTACHMENTS,
        "SMALL_ATTACHMENT_LIMIT": SMALL_ATTACHMENT_LIMIT,
        "REACT_ON_SEEN": REACT_ON_SEEN,
        "SCHEDULER_INTERVAL": SCHEDULER_INTERVAL,
    }
