"""
Shared fixtures for the ThreadRelay unit tests.

The relay engine only talks to its collaborators through the protocols in
threadrelay.platform, so every test runs against in-memory fakes and an
in-memory SQLite database. No network, no running server.
"""
import asyncio
import itertools
from contextlib import asynccontextmanager

import aiosqlite
import pytest

from threadrelay.config import RelaySettings
from threadrelay.db import crud
from threadrelay.db.database import init_schema
from threadrelay.platform import (
    UNKNOWN_CHANNEL,
    PlatformError,
    PlatformFile,
    PlatformUser,
    PostedMessage,
    RelayContext,
    SavedAttachment,
    StaffMember,
)
from threadrelay.relay.messages import MessageRelay

USER_ID = "user-1"
USER_NAME = "alice"
STAFF_CHANNEL = "staff-chan-1"
DM_CHANNEL = "dm-chan-1"


class FakePlatform:
    """Records every call; channels listed in `missing_channels` behave as deleted."""

    def __init__(self) -> None:
        self._ids = itertools.count(1000)
        self.dm_channels: dict[str, str] = {USER_ID: DM_CHANNEL}
        self.missing_channels: set[str] = set()
        self.channel_errors: dict[str, Exception] = {}
        self.dm_error: PlatformError | None = None
        self.reaction_error: Exception | None = None
        self.delete_channel_error: PlatformError | None = None
        self.sent: list[tuple[str, object, object]] = []
        self.edits: list[tuple[str, str, object]] = []
        self.deletions: list[tuple[str, str]] = []
        self.reactions: list[tuple[str, str, str]] = []
        self.deleted_channels: list[str] = []

    def posts_to(self, channel_id: str) -> list[tuple[object, object]]:
        return [(content, files) for ch, content, files in self.sent if ch == channel_id]

    async def get_dm_channel(self, user_id):
        return self.dm_channels.get(user_id)

    async def create_message(self, channel_id, content, files=None):
        if channel_id in self.missing_channels:
            raise PlatformError("Unknown Channel", code=UNKNOWN_CHANNEL)
        if channel_id in self.channel_errors:
            raise self.channel_errors[channel_id]
        if self.dm_error is not None and channel_id in self.dm_channels.values():
            raise self.dm_error
        self.sent.append((channel_id, content, files))
        text = content if isinstance(content, str) else content.get("content", "")
        return PostedMessage(id=str(next(self._ids)), channel_id=channel_id, content=text)

    async def edit_message(self, channel_id, message_id, content):
        self.edits.append((channel_id, message_id, content))

    async def delete_message(self, channel_id, message_id):
        self.deletions.append((channel_id, message_id))

    async def add_reaction(self, channel_id, message_id, emoji):
        if self.reaction_error is not None:
            raise self.reaction_error
        self.reactions.append((channel_id, message_id, emoji))

    async def delete_channel(self, channel_id, reason=None):
        if self.delete_channel_error is not None:
            raise self.delete_channel_error
        self.deleted_channels.append(channel_id)
        self.missing_channels.add(channel_id)


class FakeAttachmentStore:
    """Later attachments finish first, so callers can't rely on completion order."""

    def __init__(self) -> None:
        self.saved: list[str] = []
        self.converted: list[str] = []

    async def save_attachment(self, attachment):
        await asyncio.sleep(0.001 * (10 - min(int(attachment.id), 10)))
        self.saved.append(attachment.id)
        return SavedAttachment(url=f"https://files.test/{attachment.id}/{attachment.filename}")

    async def to_platform_file(self, attachment):
        await asyncio.sleep(0.001 * (10 - min(int(attachment.id), 10)))
        self.converted.append(attachment.id)
        return PlatformFile(name=attachment.filename, file=f"bytes-of-{attachment.id}".encode())


class FakeFormatter:
    def format_staff_reply_dm(self, message):
        author = (message.role_name or "Staff") if message.is_anonymous else message.user_name
        return f"**{author}:** {message.body}"

    def format_staff_reply_thread_message(self, message):
        return f"[{message.message_number}] {message.user_name}: {message.body}"

    def format_user_reply_thread_message(self, message):
        return f"{message.user_name}: {message.body}"

    def format_staff_reply_edit_notification(self, message, new_text, actor):
        return f"{actor.user.username} edited reply {message.message_number}: {message.body} -> {new_text}"

    def format_staff_reply_deletion_notification(self, message, actor):
        return f"{actor.user.username} deleted reply {message.message_number}: {message.body}"


@asynccontextmanager
async def _memory_db():
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_schema(db)
    try:
        yield db
    finally:
        await db.close()


@pytest.fixture
def memory_db():
    """Factory: `async with memory_db() as db:` gives a fresh schema-initialized database."""
    return _memory_db


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def attachment_store():
    return FakeAttachmentStore()


@pytest.fixture
def formatter():
    return FakeFormatter()


@pytest.fixture
def moderator():
    return StaffMember(user=PlatformUser(id="mod-1", username="modbob", discriminator="0001"),
                       nick="Bob", main_role_name="Moderator")


@pytest.fixture
def relay_factory(platform, attachment_store, formatter):
    """Factory: `await relay_factory(db, settings=...)` opens a thread and returns its relay."""
    async def _make(db, settings=None, user_id=USER_ID, user_name=USER_NAME, channel_id=STAFF_CHANNEL):
        ctx = RelayContext(db=db, platform=platform, attachments=attachment_store, formatter=formatter,
                           settings=settings or RelaySettings(self_url="https://relay.test"))
        thread = await crud.thread_create(db, user_id, user_name, channel_id)
        return MessageRelay(ctx, thread)
    return _make
