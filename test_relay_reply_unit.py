"""
Unit tests for MessageRelay.reply_to_user (staff -> user).
"""
import asyncio
from datetime import datetime, timezone

import pytest

from threadrelay.config import RelaySettings
from threadrelay.db import crud
from threadrelay.db.models import MessageType, ThreadStatus
from threadrelay.platform import CANNOT_MESSAGE_USER, PlatformError, PlatformUser, RawAttachment
from threadrelay.relay.lifecycle import ThreadClosedError

from conftest import DM_CHANNEL, STAFF_CHANNEL


def _attachment(n: int) -> RawAttachment:
    return RawAttachment(id=str(n), filename=f"file{n}.png", url=f"https://cdn.test/{n}", size=100)


async def _messages_of_type(db, thread_id, message_type):
    return [m for m in await crud.msg_list(db, thread_id) if m.message_type == message_type]


@pytest.mark.asyncio
async def test_reply_is_delivered_numbered_and_cross_linked(memory_db, relay_factory, platform, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db)
        assert await relay.reply_to_user(moderator, "hello") is True

        assert platform.posts_to(DM_CHANNEL) == [("**Bob:** hello", None)]
        assert platform.posts_to(STAFF_CHANNEL) == [("[1] Bob: hello", None)]

        [reply] = await _messages_of_type(db, relay.thread.id, MessageType.TO_USER)
        assert reply.message_number == 1
        assert reply.user_id == "mod-1"
        assert reply.user_name == "Bob"
        assert reply.role_name == "Moderator"
        assert reply.body == "hello"
        assert reply.dm_channel_id == DM_CHANNEL
        assert reply.dm_message_id == "1000"
        assert reply.inbox_message_id == "1001"


@pytest.mark.asyncio
async def test_consecutive_replies_get_consecutive_numbers(memory_db, relay_factory, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db)
        await relay.reply_to_user(moderator, "one")
        await relay.reply_to_user(moderator, "two")

        second = await relay.find_thread_message_by_message_number(2)
        assert second is not None and second.body == "two"
        assert (await crud.thread_get(db, relay.thread.id)).next_message_number == 3


@pytest.mark.asyncio
async def test_long_reply_is_chunked_with_files_on_last_chunk(memory_db, relay_factory, platform, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db)
        text = "x" * 4500
        assert await relay.reply_to_user(moderator, text, attachments=[_attachment(1)]) is True

        dm_posts = platform.posts_to(DM_CHANNEL)
        assert len(dm_posts) == 3
        assert [files for _, files in dm_posts[:-1]] == [None, None]
        assert [f.name for f in dm_posts[-1][1]] == ["file1.png"]
        assert "".join(content for content, _ in dm_posts) == f"**Bob:** {text}"

        inbox_posts = platform.posts_to(STAFF_CHANNEL)
        assert len(inbox_posts) == 3
        assert inbox_posts[0][1] is None and inbox_posts[-1][1] is not None

        [reply] = await _messages_of_type(db, relay.thread.id, MessageType.TO_USER)
        # The first posted chunk is the one the transcript points at
        assert reply.dm_message_id == "1000"
        assert reply.inbox_message_id == "1003"


@pytest.mark.asyncio
async def test_attachments_keep_their_order(memory_db, relay_factory, platform, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db)
        await relay.reply_to_user(moderator, "pics", attachments=[_attachment(1), _attachment(2), _attachment(3)])

        [(_, files)] = platform.posts_to(DM_CHANNEL)
        assert [f.name for f in files] == ["file1.png", "file2.png", "file3.png"]
        [reply] = await _messages_of_type(db, relay.thread.id, MessageType.TO_USER)
        assert reply.attachments == [
            "https://files.test/1/file1.png",
            "https://files.test/2/file2.png",
            "https://files.test/3/file3.png",
        ]


@pytest.mark.asyncio
async def test_unreachable_user_reports_error_and_changes_nothing(memory_db, relay_factory, platform, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db)
        platform.dm_channels.clear()

        assert await relay.reply_to_user(moderator, "hello") is False

        [(notice, _)] = platform.posts_to(STAFF_CHANNEL)
        assert notice.startswith("Error while replying to user: Could not open DMs with the user")
        assert await _messages_of_type(db, relay.thread.id, MessageType.TO_USER) == []
        assert (await crud.thread_get(db, relay.thread.id)).next_message_number == 1


@pytest.mark.asyncio
async def test_user_refusing_messages_is_reported(memory_db, relay_factory, platform, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db)
        platform.dm_error = PlatformError("Cannot send messages to this user", code=CANNOT_MESSAGE_USER)

        assert await relay.reply_to_user(moderator, "hello") is False
        assert platform.posts_to(STAFF_CHANNEL) == [
            ("Error while replying to user: Cannot send messages to this user", None)
        ]
        assert (await crud.thread_get(db, relay.thread.id)).next_message_number == 1


@pytest.mark.asyncio
async def test_other_dm_failures_propagate(memory_db, relay_factory, platform, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db)
        platform.dm_error = PlatformError("Internal Server Error", code=500)
        with pytest.raises(PlatformError):
            await relay.reply_to_user(moderator, "hello")


@pytest.mark.asyncio
async def test_reply_cancels_scheduled_close_once(memory_db, relay_factory, platform, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db)
        closer = PlatformUser(id="mod-7", username="closer")
        await relay.lifecycle.schedule_close(datetime(2030, 1, 1, tzinfo=timezone.utc), closer, silent=False)

        await relay.reply_to_user(moderator, "hello")

        notices = [c for c, _ in platform.posts_to(STAFF_CHANNEL)
                   if c == "Cancelling scheduled closing of this thread due to new reply"]
        assert len(notices) == 1
        assert (await crud.thread_get(db, relay.thread.id)).scheduled_close_at is None

        await relay.reply_to_user(moderator, "again")
        notices = [c for c, _ in platform.posts_to(STAFF_CHANNEL)
                   if c == "Cancelling scheduled closing of this thread due to new reply"]
        assert len(notices) == 1


@pytest.mark.asyncio
async def test_reply_sees_schedule_made_through_another_handle(memory_db, relay_factory, platform, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db)
        await crud.thread_update(db, relay.thread.id, {
            "scheduled_close_at": datetime(2030, 1, 1, tzinfo=timezone.utc),
            "scheduled_close_id": "mod-7",
            "scheduled_close_name": "closer",
            "scheduled_close_silent": False,
        })
        await relay.reply_to_user(moderator, "hello")
        assert (await crud.thread_get(db, relay.thread.id)).scheduled_close_at is None


@pytest.mark.asyncio
async def test_missing_staff_channel_auto_closes_but_reply_counts(memory_db, relay_factory, platform, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db)
        platform.missing_channels.add(STAFF_CHANNEL)

        assert await relay.reply_to_user(moderator, "hello") is True

        assert relay.thread.status is ThreadStatus.CLOSED
        assert (await crud.thread_get(db, relay.thread.id)).status is ThreadStatus.CLOSED
        [reply] = await _messages_of_type(db, relay.thread.id, MessageType.TO_USER)
        assert reply.dm_message_id is not None
        assert reply.inbox_message_id is None


@pytest.mark.asyncio
async def test_nickname_policy(memory_db, relay_factory, platform, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db, settings=RelaySettings(use_nicknames=False))
        await relay.reply_to_user(moderator, "hello")
        [reply] = await _messages_of_type(db, relay.thread.id, MessageType.TO_USER)
        assert reply.user_name == "modbob"
        assert platform.posts_to(DM_CHANNEL) == [("**modbob:** hello", None)]


@pytest.mark.asyncio
async def test_anonymous_reply_hides_name_from_user(memory_db, relay_factory, platform, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db)
        await relay.reply_to_user(moderator, "hello", anonymous=True)
        assert platform.posts_to(DM_CHANNEL) == [("**Moderator:** hello", None)]
        [reply] = await _messages_of_type(db, relay.thread.id, MessageType.TO_USER)
        assert reply.is_anonymous is True
        assert reply.user_name == "Bob"


@pytest.mark.asyncio
async def test_reply_to_closed_thread_is_rejected(memory_db, relay_factory, platform, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db)
        await crud.thread_update(db, relay.thread.id, {"status": ThreadStatus.CLOSED})
        with pytest.raises(ThreadClosedError):
            await relay.reply_to_user(moderator, "hello")
        assert platform.sent == []


@pytest.mark.asyncio
async def test_concurrent_replies_get_distinct_gapless_numbers(memory_db, relay_factory, moderator):
    async with memory_db() as db:
        relay = await relay_factory(db)
        results = await asyncio.gather(*(relay.reply_to_user(moderator, f"reply {i}") for i in range(8)))
        assert results == [True] * 8

        replies = await _messages_of_type(db, relay.thread.id, MessageType.TO_USER)
        assert sorted(m.message_number for m in replies) == list(range(1, 9))
        assert (await crud.thread_get(db, relay.thread.id)).next_message_number == 9
