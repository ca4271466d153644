"""
Human-readable description of "rich activity" invites attached to user messages
(game invites, listen-along parties, ...). The staff side only sees text, so the
invite is summarized as a suffix of the relayed body.
"""
from enum import IntEnum
from typing import Optional

from threadrelay.platform import IncomingMessage


class ActivityType(IntEnum):
    JOIN = 1
    SPECTATE = 2
    LISTEN = 3
    JOIN_REQUEST = 5


UNKNOWN_APPLICATION = "Unknown Application"

# Party ids of listen-along invites from this provider carry no application object
_KNOWN_PARTY_PREFIXES: dict[str, str] = {
    "spotify:": "Spotify",
}

_ACTION_BY_TYPE: dict[int, str] = {
    ActivityType.JOIN: "join a game",
    ActivityType.JOIN_REQUEST: "join a game",
    ActivityType.SPECTATE: "spectate",
    ActivityType.LISTEN: "listen along",
}
_DEFAULT_ACTION = "do something"


def application_name(msg: IncomingMessage) -> str:
    name: Optional[str] = msg.application.name if msg.application else None
    if not name and msg.activity is not None:
        party_id = msg.activity.party_id or ""
        for prefix, provider in _KNOWN_PARTY_PREFIXES.items():
            if party_id.startswith(prefix):
                name = provider
                break
    return name or UNKNOWN_APPLICATION


def activity_action(activity_type: int) -> str:
    return _ACTION_BY_TYPE.get(activity_type, _DEFAULT_ACTION)


def describe_activity(body: str, msg: IncomingMessage) -> str:
    """Append the invite description to `body`. Messages without an activity are returned unchanged."""
    if msg.activity is None:
        return body
    action = activity_action(msg.activity.type)
    body += f"\n\n*<This message contains an invite to {action} on {application_name(msg)}>*"
    return body.strip()
