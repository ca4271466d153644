"""
Data models (dataclasses) for ThreadRelay.
These are plain Python objects used across the DB, relay, and API layers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Optional


class ThreadStatus(IntEnum):
    OPEN = 1
    CLOSED = 2
    SUSPENDED = 3


class MessageType(IntEnum):
    SYSTEM = 1
    CHAT = 2
    FROM_USER = 3
    TO_USER = 4
    LEGACY = 5
    COMMAND = 6
    SYSTEM_TO_USER = 7


def _require(obj, *names: str) -> None:
    missing = [n for n in names if getattr(obj, n) is None]
    if missing:
        raise ValueError(f"{type(obj).__name__} is missing required field(s): {', '.join(missing)}")


def _all_or_none(obj, label: str, *names: str) -> None:
    set_count = sum(1 for n in names if getattr(obj, n) is not None)
    if set_count not in (0, len(names)):
        raise ValueError(f"{label} fields must be all set or all empty: {', '.join(names)}")


@dataclass
class Thread:
    id: str
    status: ThreadStatus
    user_id: str
    user_name: str
    channel_id: str
    next_message_number: int
    created_at: datetime
    scheduled_close_at: Optional[datetime] = None
    scheduled_close_id: Optional[str] = None
    scheduled_close_name: Optional[str] = None
    scheduled_close_silent: Optional[bool] = None
    scheduled_suspend_at: Optional[datetime] = None
    scheduled_suspend_id: Optional[str] = None
    scheduled_suspend_name: Optional[str] = None
    # Pending mentions, in the order they were added. Stored comma-delimited.
    alert_ids: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        _require(self, "id", "status", "user_id", "user_name", "channel_id", "next_message_number", "created_at")
        self.status = ThreadStatus(self.status)
        _all_or_none(self, "scheduled close", "scheduled_close_at", "scheduled_close_id",
                     "scheduled_close_name", "scheduled_close_silent")
        _all_or_none(self, "scheduled suspend", "scheduled_suspend_at", "scheduled_suspend_id",
                     "scheduled_suspend_name")

    @property
    def is_closed(self) -> bool:
        return self.status == ThreadStatus.CLOSED


@dataclass
class ThreadMessage:
    """
    One logged unit of conversation or system activity.
    `id` and `created_at` stay None on drafts that have not been persisted yet.
    """
    thread_id: str
    message_type: MessageType
    body: str
    id: Optional[int] = None
    message_number: Optional[int] = None   # TO_USER only, unique within a thread
    user_id: Optional[str] = None
    user_name: str = ""
    is_anonymous: bool = False
    role_name: Optional[str] = None
    attachments: list[str] = field(default_factory=list)
    small_attachments: list[str] = field(default_factory=list)
    dm_message_id: Optional[str] = None
    dm_channel_id: Optional[str] = None
    inbox_message_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        _require(self, "thread_id", "message_type", "body")
        self.message_type = MessageType(self.message_type)
        if self.message_number is not None and self.message_type != MessageType.TO_USER:
            raise ValueError("message_number is only assigned to TO_USER messages")
