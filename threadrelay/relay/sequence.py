"""
Per-thread message number allocation for staff replies.
"""
import logging

import aiosqlite

logger = logging.getLogger(__name__)


async def allocate_next_message_number(db: aiosqlite.Connection, thread_id: str) -> int:
    """Atomically take the thread's next message number and advance the counter.

    The read and the increment happen in a single UPDATE ... RETURNING statement,
    committed as its own transaction, so two concurrent callers can never observe
    the same value. Numbers are never handed back, even if the message that used
    one is deleted later.

    NOTE: the statement is executed and drained in one call (execute_fetchall).
    A RETURNING statement left half-read on the shared connection would block
    the next commit() issued by another coroutine.
    """
    rows = await db.execute_fetchall(
        "UPDATE threads SET next_message_number = next_message_number + 1 WHERE id = ? "
        "RETURNING next_message_number - 1 AS allocated",
        (thread_id,),
    )
    await db.commit()
    if not rows:
        raise LookupError(f"Thread {thread_id} not found")
    allocated = rows[0]["allocated"]
    logger.debug(f"Allocated message number {allocated} in thread {thread_id}")
    return allocated
