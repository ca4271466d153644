"""
Message relay: moves messages between a user's DM channel and the thread's
staff channel, keeps the transcript in `thread_messages`, and cross-links the
ids of every copy.
"""
import asyncio
import dataclasses
import logging
from typing import Optional, Sequence

from threadrelay.db import crud
from threadrelay.db.models import MessageType, Thread, ThreadMessage
from threadrelay.platform import (
    CANNOT_MESSAGE_USER,
    UNKNOWN_CHANNEL,
    IncomingMessage,
    MessageContent,
    PlatformError,
    PlatformFile,
    PostedMessage,
    RawAttachment,
    RelayContext,
    StaffMember,
    StaffSurfaceGone,
    UserSurfaceUnavailable,
    best_effort,
)
from threadrelay.relay import alerts
from threadrelay.relay.activity import describe_activity
from threadrelay.relay.chunking import chunk_text
from threadrelay.relay.lifecycle import ThreadClosedError, ThreadLifecycle
from threadrelay.relay.sequence import allocate_next_message_number

logger = logging.getLogger(__name__)


class MessageRelay:
    """Relay operations for one thread.

    The Thread record is shared with `self.lifecycle`; both keep it in sync
    with what they write.
    """

    def __init__(self, ctx: RelayContext, thread: Thread) -> None:
        self.ctx = ctx
        self.thread = thread
        self.lifecycle = ThreadLifecycle(ctx, thread, post_notice=self.post_system_message)

    @classmethod
    async def load(cls, ctx: RelayContext, thread_id: str) -> "MessageRelay":
        thread = await crud.thread_get(ctx.db, thread_id)
        if thread is None:
            raise LookupError(f"Thread {thread_id} not found")
        return cls(ctx, thread)

    async def refresh(self) -> None:
        """Reload the thread row in place, picking up writes made through other handles."""
        fresh = await crud.thread_get(self.ctx.db, self.thread.id)
        if fresh is None:
            raise LookupError(f"Thread {self.thread.id} not found")
        for f in dataclasses.fields(Thread):
            setattr(self.thread, f.name, getattr(fresh, f.name))

    def _ensure_open(self) -> None:
        if self.thread.is_closed:
            raise ThreadClosedError(self.thread.id)

    # ─────────────────────────────────────────────
    # Transport
    # ─────────────────────────────────────────────

    async def get_dm_channel(self) -> Optional[str]:
        return await self.ctx.platform.get_dm_channel(self.thread.user_id)

    async def _send(self, channel_id: str, content: MessageContent,
                    files: Optional[Sequence[PlatformFile]] = None) -> PostedMessage:
        """Send content to a channel and return the first message posted.

        Text longer than the platform limit goes out as several posts, in order;
        files only ride along with the last one. Payload dicts are sent as-is.
        """
        create = self.ctx.platform.create_message
        if not isinstance(content, str):
            return await create(channel_id, content, files or None)

        chunks = chunk_text(content) or [content]
        first_message = None
        for i, piece in enumerate(chunks):
            if i == len(chunks) - 1:
                posted = await create(channel_id, piece, files or None)
            else:
                posted = await create(channel_id, piece)
            first_message = first_message or posted
        return first_message

    async def _send_dm_to_user(self, content: MessageContent,
                               files: Optional[Sequence[PlatformFile]] = None) -> PostedMessage:
        dm_channel_id = await self.get_dm_channel()
        if not dm_channel_id:
            raise UserSurfaceUnavailable()
        try:
            return await self._send(dm_channel_id, content, files)
        except PlatformError as e:
            if isinstance(e, UserSurfaceUnavailable) or e.code != CANNOT_MESSAGE_USER:
                raise
            raise UserSurfaceUnavailable(str(e)) from e

    async def _post_to_thread_channel(self, content: MessageContent,
                                      files: Optional[Sequence[PlatformFile]] = None) -> Optional[PostedMessage]:
        """Post to the staff channel. Returns None if the channel turned out to be gone."""
        try:
            return await self._send(self.thread.channel_id, content, files)
        except PlatformError as e:
            if e.code != UNKNOWN_CHANNEL:
                raise
        await self.lifecycle.handle_staff_surface_gone(StaffSurfaceGone(self.thread.id, self.thread.channel_id))
        return None

    async def _prepare_attachments(self, attachments: Sequence[RawAttachment]) -> tuple[list[PlatformFile], list[str]]:
        """Convert and store all attachments concurrently. Both lists follow the input order."""
        if not attachments:
            return [], []
        store = self.ctx.attachments
        files, saved = await asyncio.gather(
            asyncio.gather(*(store.to_platform_file(a) for a in attachments)),
            asyncio.gather(*(store.save_attachment(a) for a in attachments)),
        )
        return list(files), [s.url for s in saved]

    async def _add_thread_message_to_db(self, message: ThreadMessage) -> ThreadMessage:
        return await crud.msg_insert(self.ctx.db, message)

    async def _link_inbox_message(self, message: ThreadMessage, inbox_message: Optional[PostedMessage]) -> None:
        if inbox_message is None:
            return
        await crud.msg_update(self.ctx.db, message.id, {"inbox_message_id": inbox_message.id})
        message.inbox_message_id = inbox_message.id

    # ─────────────────────────────────────────────
    # Staff -> user
    # ─────────────────────────────────────────────

    async def reply_to_user(self, actor: StaffMember, text: str,
                            attachments: Sequence[RawAttachment] = (), anonymous: bool = False) -> bool:
        """Send a staff reply to the user and echo it in the thread channel.

        Returns False (after telling staff why) when the user can't be messaged;
        nothing else about the thread changes in that case.
        """
        await self.refresh()
        self._ensure_open()

        settings = self.ctx.settings
        moderator_name = actor.nick if settings.use_nicknames and actor.nick else actor.user.username
        files, attachment_links = await self._prepare_attachments(attachments)

        draft = ThreadMessage(
            thread_id=self.thread.id,
            message_type=MessageType.TO_USER,
            user_id=actor.id,
            user_name=moderator_name,
            body=text,
            is_anonymous=anonymous,
            role_name=actor.main_role_name,
            attachments=attachment_links,
        )

        dm_content = self.ctx.formatter.format_staff_reply_dm(draft)
        try:
            dm_message = await self._send_dm_to_user(dm_content, files)
        except UserSurfaceUnavailable as e:
            logger.info(f"Reply in thread {self.thread.id} could not be delivered: {e}")
            await self.post_system_message(f"Error while replying to user: {e}")
            return False

        draft.message_number = await allocate_next_message_number(self.ctx.db, self.thread.id)
        draft.dm_message_id = dm_message.id
        draft.dm_channel_id = dm_message.channel_id
        message = await self._add_thread_message_to_db(draft)

        inbox_content = self.ctx.formatter.format_staff_reply_thread_message(message)
        inbox_message = await self._post_to_thread_channel(inbox_content, files)
        await self._link_inbox_message(message, inbox_message)

        # New staff activity interrupts a pending close
        if self.thread.scheduled_close_at and not self.thread.is_closed:
            await self.lifecycle.cancel_scheduled_close()
            await self.post_system_message("Cancelling scheduled closing of this thread due to new reply")

        return True

    # ─────────────────────────────────────────────
    # User -> staff
    # ─────────────────────────────────────────────

    async def receive_user_reply(self, msg: IncomingMessage) -> ThreadMessage:
        await self.refresh()
        self._ensure_open()

        settings = self.ctx.settings
        store = self.ctx.attachments
        attachment_links = []
        small_attachment_links = []
        attachment_files = []

        for attachment in msg.attachments:
            saved = await store.save_attachment(attachment)
            # Small attachments are re-uploaded to the staff channel, larger ones only linked
            if settings.relay_small_attachments_as_attachments and attachment.size <= settings.small_attachment_limit:
                attachment_files.append(await store.to_platform_file(attachment))
                small_attachment_links.append(saved.url)
            attachment_links.append(saved.url)

        message = await self._add_thread_message_to_db(ThreadMessage(
            thread_id=self.thread.id,
            message_type=MessageType.FROM_USER,
            user_id=self.thread.user_id,
            user_name=msg.author.full_name,
            body=describe_activity(msg.content or "", msg),
            dm_message_id=msg.id,
            dm_channel_id=msg.channel_id,
            attachments=attachment_links,
            small_attachments=small_attachment_links,
        ))

        inbox_content = self.ctx.formatter.format_user_reply_thread_message(message)
        inbox_message = await self._post_to_thread_channel(inbox_content, attachment_files)
        await self._link_inbox_message(message, inbox_message)

        if settings.react_on_seen:
            await best_effort(
                self.ctx.platform.add_reaction(msg.channel_id, msg.id, settings.react_on_seen_emoji),
                "seen reaction",
            )

        if self.thread.scheduled_close_at and not self.thread.is_closed:
            closer_id = self.thread.scheduled_close_id
            await self.lifecycle.cancel_scheduled_close()
            await self.post_system_message({
                "content": f"<@!{closer_id}> Thread that was scheduled to be closed got a new reply. Cancelling.",
                "allowed_mentions": {"users": [closer_id]},
            })

        if self.thread.alert_ids:
            ids = list(self.thread.alert_ids)
            mentions = "".join(f"<@!{user_id}> " for user_id in ids)
            await alerts.delete_alerts(self.ctx.db, self.thread)
            await self.post_system_message({
                "content": f"{mentions}New message from {self.thread.user_name}",
                "allowed_mentions": {"users": ids},
            })

        return message

    # ─────────────────────────────────────────────
    # Staff reply edits and deletions
    # ─────────────────────────────────────────────

    def _check_staff_reply(self, message: ThreadMessage) -> None:
        if message.thread_id != self.thread.id:
            raise ValueError(f"Message {message.id} does not belong to thread {self.thread.id}")
        if message.message_type != MessageType.TO_USER:
            raise ValueError(f"Message {message.id} is not a staff reply")

    async def edit_staff_reply(self, actor: StaffMember, message: ThreadMessage, new_text: str,
                               quiet: bool = False) -> ThreadMessage:
        self._ensure_open()
        self._check_staff_reply(message)

        edited = dataclasses.replace(message, body=new_text)
        formatter = self.ctx.formatter
        platform = self.ctx.platform

        await platform.edit_message(message.dm_channel_id, message.dm_message_id, formatter.format_staff_reply_dm(edited))
        if message.inbox_message_id:
            await platform.edit_message(self.thread.channel_id, message.inbox_message_id,
                                        formatter.format_staff_reply_thread_message(edited))

        await crud.msg_update(self.ctx.db, message.id, {"body": new_text})

        if not quiet:
            await self.post_system_message(formatter.format_staff_reply_edit_notification(message, new_text, actor))
        logger.info(f"Staff reply {message.id} in thread {self.thread.id} edited by {actor.id}")
        return edited

    async def delete_staff_reply(self, actor: StaffMember, message: ThreadMessage, quiet: bool = False) -> None:
        self._ensure_open()
        self._check_staff_reply(message)

        platform = self.ctx.platform
        await platform.delete_message(message.dm_channel_id, message.dm_message_id)
        if message.inbox_message_id:
            await platform.delete_message(self.thread.channel_id, message.inbox_message_id)

        await crud.msg_delete(self.ctx.db, message.id)

        if not quiet:
            await self.post_system_message(self.ctx.formatter.format_staff_reply_deletion_notification(message, actor))
        logger.info(f"Staff reply {message.id} in thread {self.thread.id} deleted by {actor.id}")

    # ─────────────────────────────────────────────
    # System notices
    # ─────────────────────────────────────────────

    async def post_system_message(self, content: MessageContent, files: Optional[Sequence[PlatformFile]] = None,
                                  save_to_log: bool = True) -> Optional[PostedMessage]:
        msg = await self._post_to_thread_channel(content, files)
        if msg and save_to_log:
            await self._add_thread_message_to_db(ThreadMessage(
                thread_id=self.thread.id,
                message_type=MessageType.SYSTEM,
                user_id=None,
                user_name="",
                body=msg.content or "<empty message>",
                inbox_message_id=msg.id,
            ))
        return msg

    async def send_system_message_to_user(self, content: MessageContent,
                                          files: Optional[Sequence[PlatformFile]] = None,
                                          save_to_log: bool = True) -> PostedMessage:
        msg = await self._send_dm_to_user(content, files)
        if save_to_log:
            await self._add_thread_message_to_db(ThreadMessage(
                thread_id=self.thread.id,
                message_type=MessageType.SYSTEM_TO_USER,
                user_id=None,
                user_name="",
                body=msg.content or "<empty message>",
                dm_message_id=msg.id,
                dm_channel_id=msg.channel_id,
            ))
        return msg

    async def post_non_log_message(self, content: MessageContent,
                                   files: Optional[Sequence[PlatformFile]] = None) -> Optional[PostedMessage]:
        return await self._post_to_thread_channel(content, files)

    # ─────────────────────────────────────────────
    # Staff-side chatter captured in the transcript
    # ─────────────────────────────────────────────

    async def _log_staff_side_message(self, msg: IncomingMessage, message_type: MessageType) -> ThreadMessage:
        self._ensure_open()
        # Keyed by the platform message id; these rows never get a mirror id
        return await self._add_thread_message_to_db(ThreadMessage(
            thread_id=self.thread.id,
            message_type=message_type,
            user_id=msg.author.id,
            user_name=msg.author.full_name,
            body=msg.content,
            dm_message_id=msg.id,
            dm_channel_id=msg.channel_id,
        ))

    async def save_chat_message_to_logs(self, msg: IncomingMessage) -> ThreadMessage:
        return await self._log_staff_side_message(msg, MessageType.CHAT)

    async def save_command_message_to_logs(self, msg: IncomingMessage) -> ThreadMessage:
        return await self._log_staff_side_message(msg, MessageType.COMMAND)

    async def update_chat_message_in_logs(self, msg: IncomingMessage) -> int:
        self._ensure_open()
        return await crud.msg_update_by_dm_id(self.ctx.db, self.thread.id, msg.id, {"body": msg.content})

    async def delete_chat_message_from_logs(self, message_id: str) -> int:
        self._ensure_open()
        return await crud.msg_delete_by_dm_id(self.ctx.db, self.thread.id, message_id)

    # ─────────────────────────────────────────────
    # Transcript queries
    # ─────────────────────────────────────────────

    async def get_thread_messages(self) -> list[ThreadMessage]:
        return await crud.msg_list(self.ctx.db, self.thread.id)

    async def find_thread_message_by_message_number(self, message_number: int) -> Optional[ThreadMessage]:
        return await crud.msg_find_by_number(self.ctx.db, self.thread.id, message_number)
