"""
Sweep for scheduled closes and suspensions.

The relay engine only stores deadlines. The bot embedding it runs
scheduler_loop() (or calls run_scheduled_transitions() from its own timer) to
carry them out once due.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from threadrelay.config import SCHEDULER_INTERVAL
from threadrelay.db import crud
from threadrelay.platform import RelayContext
from threadrelay.relay.messages import MessageRelay

logger = logging.getLogger(__name__)


async def run_scheduled_transitions(ctx: RelayContext, now: Optional[datetime] = None) -> list[str]:
    """Close and suspend every thread whose deadline has passed. Returns the affected thread ids.

    A failing thread is logged and skipped; it stays due and is retried on the next sweep.
    """
    now = now or datetime.now(timezone.utc)
    transitioned = []

    for thread in await crud.threads_due_for_close(ctx.db, now):
        relay = MessageRelay(ctx, thread)
        logger.info(f"Closing thread {thread.id} as scheduled by {thread.scheduled_close_name}")
        try:
            await relay.lifecycle.close(silent=bool(thread.scheduled_close_silent))
        except Exception:
            logger.exception(f"Scheduled close of thread {thread.id} failed")
            continue
        transitioned.append(thread.id)

    for thread in await crud.threads_due_for_suspend(ctx.db, now):
        relay = MessageRelay(ctx, thread)
        logger.info(f"Suspending thread {thread.id} as scheduled by {thread.scheduled_suspend_name}")
        suspended_by = thread.scheduled_suspend_name
        try:
            await relay.lifecycle.suspend()
        except Exception:
            logger.exception(f"Scheduled suspension of thread {thread.id} failed")
            continue
        transitioned.append(thread.id)
        try:
            await relay.post_system_message(
                f"**Thread suspended** as scheduled by {suspended_by}. "
                f"This thread will act as closed until unsuspended."
            )
        except Exception:
            logger.exception(f"Could not announce suspension of thread {thread.id}")

    return transitioned


async def scheduler_loop(ctx: RelayContext, interval: int = SCHEDULER_INTERVAL) -> None:
    """Run the sweep every `interval` seconds until cancelled."""
    logger.info(f"Scheduled transition sweep running every {interval}s")
    while True:
        try:
            transitioned = await run_scheduled_transitions(ctx)
            if transitioned:
                logger.info(f"Scheduled transitions applied to {len(transitioned)} thread(s)")
        except Exception:
            # Keep sweeping; the failed thread stays due and is retried next round
            logger.exception("Scheduled transition sweep failed")
        await asyncio.sleep(interval)
