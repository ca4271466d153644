"""
Thread lifecycle: OPEN / SUSPENDED / CLOSED transitions and the bookkeeping
for deferred (scheduled) closes and suspensions.

Deadlines are only stored here. Something else (see threadrelay.scheduler)
polls them and calls close()/suspend() once they are due.
"""
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from threadrelay.db import crud
from threadrelay.db.models import Thread, ThreadStatus
from threadrelay.platform import PlatformError, PlatformUser, RelayContext, StaffSurfaceGone

logger = logging.getLogger(__name__)

# post_notice(content, save_to_log=True) -> posted message or None
NoticePoster = Callable[..., Awaitable[Any]]


class ThreadClosedError(Exception):
    """Raised when a write is attempted on a thread that has already been closed."""

    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        super().__init__(f"Thread {thread_id} is closed")


class ThreadLifecycle:
    def __init__(self, ctx: RelayContext, thread: Thread, post_notice: NoticePoster) -> None:
        self.ctx = ctx
        self.thread = thread
        self._post_notice = post_notice

    async def _write(self, fields: dict[str, Any]) -> None:
        if self.thread.is_closed:
            raise ThreadClosedError(self.thread.id)
        if not await crud.thread_update_open(self.ctx.db, self.thread.id, fields):
            # Closed (or removed) behind our back
            raise ThreadClosedError(self.thread.id)
        for name, value in fields.items():
            setattr(self.thread, name, value)

    # ─────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────

    async def close(self, suppress_notice: bool = False, silent: bool = False) -> None:
        """Close the thread and delete its staff channel.

        The status change is authoritative: failing to delete the channel
        (usually because it is already gone) is logged and otherwise ignored.
        A thread may be closed straight from SUSPENDED.
        """
        if self.thread.is_closed:
            logger.info(f"Thread {self.thread.id} is already closed")
            return

        if not suppress_notice:
            logger.info(f"Closing thread {self.thread.id}")
            if silent:
                await self._post_notice("Closing thread silently...", save_to_log=False)
            else:
                await self._post_notice("Closing thread...")
            # Posting the notice may have found the channel gone and closed the thread already
            if self.thread.is_closed:
                return

        await crud.thread_update(self.ctx.db, self.thread.id, {"status": ThreadStatus.CLOSED})
        self.thread.status = ThreadStatus.CLOSED

        logger.info(f"Deleting channel {self.thread.channel_id}")
        try:
            await self.ctx.platform.delete_channel(self.thread.channel_id, "Thread closed")
        except PlatformError as e:
            logger.warning(f"Could not delete channel {self.thread.channel_id} of closed thread {self.thread.id}: {e}")

    async def handle_staff_surface_gone(self, event: StaffSurfaceGone) -> None:
        logger.info(
            f"Staff channel {event.channel_id} of thread {event.thread_id} ({self.thread.user_name}) "
            f"no longer exists. Auto-closing the thread."
        )
        await self.close(suppress_notice=True)

    async def suspend(self) -> None:
        await self._write({
            "status": ThreadStatus.SUSPENDED,
            "scheduled_suspend_at": None,
            "scheduled_suspend_id": None,
            "scheduled_suspend_name": None,
        })
        logger.info(f"Thread {self.thread.id} suspended")

    async def unsuspend(self) -> None:
        await self._write({"status": ThreadStatus.OPEN})
        logger.info(f"Thread {self.thread.id} unsuspended")

    # ─────────────────────────────────────────────
    # Scheduled transitions
    # ─────────────────────────────────────────────

    async def schedule_close(self, time: datetime, actor: PlatformUser, silent: bool) -> None:
        await self._write({
            "scheduled_close_at": time,
            "scheduled_close_id": actor.id,
            "scheduled_close_name": actor.username,
            "scheduled_close_silent": bool(silent),
        })

    async def cancel_scheduled_close(self) -> None:
        if self.thread.is_closed:
            return
        await crud.thread_update_open(self.ctx.db, self.thread.id, {name: None for name in crud.SCHEDULED_CLOSE_FIELDS})
        for name in crud.SCHEDULED_CLOSE_FIELDS:
            setattr(self.thread, name, None)

    async def schedule_suspend(self, time: datetime, actor: PlatformUser) -> None:
        await self._write({
            "scheduled_suspend_at": time,
            "scheduled_suspend_id": actor.id,
            "scheduled_suspend_name": actor.username,
        })

    async def cancel_scheduled_suspend(self) -> None:
        if self.thread.is_closed:
            return
        await crud.thread_update_open(self.ctx.db, self.thread.id, {name: None for name in crud.SCHEDULED_SUSPEND_FIELDS})
        for name in crud.SCHEDULED_SUSPEND_FIELDS:
            setattr(self.thread, name, None)

    def get_log_url(self, base_url: Optional[str] = None) -> str:
        return f"{(base_url or self.ctx.settings.self_url).rstrip('/')}/logs/{self.thread.id}"
