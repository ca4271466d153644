"""
Contracts for the collaborators the relay engine talks to.

The engine never implements the chat transport, the attachment store or the
message templates itself. It receives objects satisfying these protocols
through a RelayContext, so tests (and alternative platforms) can substitute
their own implementations.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Optional, Protocol, Sequence, Union

import aiosqlite

from threadrelay.config import RelaySettings
from threadrelay.db.models import ThreadMessage

logger = logging.getLogger(__name__)

# Maximum length of a single message body on the platform
MESSAGE_LENGTH_LIMIT = 2000

# Platform error codes the engine reacts to
UNKNOWN_CHANNEL = 10003
CANNOT_MESSAGE_USER = 50007

# Plain text (chunked when too long) or a full payload such as
# {"content": "...", "allowed_mentions": {"users": [...]}} sent as-is.
MessageContent = Union[str, dict[str, Any]]


class PlatformError(Exception):
    """Raised by platform clients when a request is rejected."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        self.code = code
        super().__init__(message)


class UserSurfaceUnavailable(PlatformError):
    """The user's DM channel cannot be opened or refuses our messages."""

    def __init__(self, message: str = "Could not open DMs with the user. They may have blocked the bot "
                                      "or set their privacy settings higher.") -> None:
        super().__init__(message, code=CANNOT_MESSAGE_USER)


@dataclass(frozen=True)
class StaffSurfaceGone:
    """Emitted when the staff channel of a thread turns out to no longer exist."""
    thread_id: str
    channel_id: str


# ─────────────────────────────────────────────
# Platform value types
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class PlatformUser:
    id: str
    username: str
    discriminator: str = "0"

    @property
    def full_name(self) -> str:
        return f"{self.username}#{self.discriminator}"


@dataclass(frozen=True)
class StaffMember:
    user: PlatformUser
    nick: Optional[str] = None
    main_role_name: Optional[str] = None

    @property
    def id(self) -> str:
        return self.user.id


@dataclass(frozen=True)
class RawAttachment:
    id: str
    filename: str
    url: str
    size: int


@dataclass(frozen=True)
class MessageActivity:
    type: int
    party_id: str = ""


@dataclass(frozen=True)
class MessageApplication:
    name: Optional[str] = None


@dataclass(frozen=True)
class IncomingMessage:
    id: str
    channel_id: str
    author: PlatformUser
    content: str = ""
    attachments: Sequence[RawAttachment] = ()
    activity: Optional[MessageActivity] = None
    application: Optional[MessageApplication] = None


@dataclass(frozen=True)
class PostedMessage:
    id: str
    channel_id: str
    content: str = ""


@dataclass(frozen=True)
class PlatformFile:
    name: str
    file: bytes


@dataclass(frozen=True)
class SavedAttachment:
    url: str


# ─────────────────────────────────────────────
# Collaborator protocols
# ─────────────────────────────────────────────

class PlatformClient(Protocol):
    async def get_dm_channel(self, user_id: str) -> Optional[str]:
        """Return the id of the private channel with the user, or None if it cannot be opened."""

    async def create_message(self, channel_id: str, content: MessageContent,
                             files: Optional[Sequence[PlatformFile]] = None) -> PostedMessage: ...

    async def edit_message(self, channel_id: str, message_id: str, content: MessageContent) -> None: ...

    async def delete_message(self, channel_id: str, message_id: str) -> None: ...

    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None: ...

    async def delete_channel(self, channel_id: str, reason: Optional[str] = None) -> None: ...


class AttachmentStore(Protocol):
    async def save_attachment(self, attachment: RawAttachment) -> SavedAttachment: ...

    async def to_platform_file(self, attachment: RawAttachment) -> PlatformFile: ...


class Formatter(Protocol):
    def format_staff_reply_dm(self, message: ThreadMessage) -> MessageContent: ...

    def format_staff_reply_thread_message(self, message: ThreadMessage) -> MessageContent: ...

    def format_user_reply_thread_message(self, message: ThreadMessage) -> MessageContent: ...

    def format_staff_reply_edit_notification(self, message: ThreadMessage, new_text: str,
                                             actor: StaffMember) -> MessageContent: ...

    def format_staff_reply_deletion_notification(self, message: ThreadMessage,
                                                 actor: StaffMember) -> MessageContent: ...


@dataclass
class RelayContext:
    """Everything a relay operation needs, passed explicitly instead of via module singletons."""
    db: aiosqlite.Connection
    platform: PlatformClient
    attachments: AttachmentStore
    formatter: Formatter
    settings: RelaySettings = field(default_factory=RelaySettings.from_config)


async def best_effort(awaitable: Awaitable[Any], what: str) -> None:
    """
    Fire-and-forget platform call: any failure is logged and dropped.
    Use only where losing the side effect is acceptable.
    """
    try:
        await awaitable
    except Exception as e:
        logger.debug(f"Ignored failure of {what}: {e}")
