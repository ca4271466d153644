"""
CRUD operations for ThreadRelay.
All functions are async and receive the aiosqlite connection from the caller.
"""
import json
import uuid
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite

from threadrelay.db.models import Thread, ThreadMessage, ThreadStatus, MessageType

logger = logging.getLogger(__name__)

SCHEDULED_CLOSE_FIELDS = ("scheduled_close_at", "scheduled_close_id", "scheduled_close_name", "scheduled_close_silent")
SCHEDULED_SUSPEND_FIELDS = ("scheduled_suspend_at", "scheduled_suspend_id", "scheduled_suspend_name")

_THREAD_COLUMNS = {
    "status", "user_id", "user_name", "channel_id", "next_message_number", "alert_ids",
    *SCHEDULED_CLOSE_FIELDS, *SCHEDULED_SUSPEND_FIELDS,
}
_MESSAGE_COLUMNS = {
    "message_type", "message_number", "user_id", "user_name", "body", "is_anonymous", "role_name",
    "attachments", "small_attachments", "dm_message_id", "dm_channel_id", "inbox_message_id",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _fmt_dt(dt: Optional[datetime]) -> Optional[str]:
    """Normalize to UTC so stored timestamps compare correctly as text."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_dt(s: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(s) if s else None


# ─────────────────────────────────────────────
# Persistence boundary encoders
# ─────────────────────────────────────────────

def encode_alert_ids(alert_ids: list[str]) -> Optional[str]:
    """Comma-delimited storage form of the alert set; NULL when empty."""
    return ",".join(alert_ids) if alert_ids else None


def decode_alert_ids(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    return [part for part in raw.split(",") if part]


def _encode_thread_value(column: str, value: Any) -> Any:
    if column == "alert_ids":
        return encode_alert_ids(value)
    if isinstance(value, datetime):
        return _fmt_dt(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, ThreadStatus):
        return int(value)
    return value


def _encode_message_value(column: str, value: Any) -> Any:
    if column in ("attachments", "small_attachments"):
        return json.dumps(list(value or []))
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, MessageType):
        return int(value)
    return value


def _build_set_clause(fields: dict[str, Any], allowed: set[str], encode) -> tuple[str, list[Any]]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown column(s): {', '.join(sorted(unknown))}")
    clause = ", ".join(f"{col} = ?" for col in fields)
    return clause, [encode(col, val) for col, val in fields.items()]


# ─────────────────────────────────────────────
# Thread CRUD
# ─────────────────────────────────────────────

async def thread_create(
    db: aiosqlite.Connection,
    user_id: str,
    user_name: str,
    channel_id: str,
    status: ThreadStatus = ThreadStatus.OPEN,
) -> Thread:
    tid = str(uuid.uuid4())
    now = _now()
    await db.execute(
        "INSERT INTO threads (id, status, user_id, user_name, channel_id, next_message_number, created_at) "
        "VALUES (?, ?, ?, ?, ?, 1, ?)",
        (tid, int(status), user_id, user_name, channel_id, now),
    )
    await db.commit()
    logger.info(f"Thread created: {tid} for user {user_id} ({user_name})")
    return Thread(id=tid, status=status, user_id=user_id, user_name=user_name, channel_id=channel_id,
                  next_message_number=1, created_at=_parse_dt(now))


async def thread_get(db: aiosqlite.Connection, thread_id: str) -> Optional[Thread]:
    async with db.execute("SELECT * FROM threads WHERE id = ?", (thread_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_thread(row)


async def thread_find_open_by_user(db: aiosqlite.Connection, user_id: str) -> Optional[Thread]:
    async with db.execute(
        "SELECT * FROM threads WHERE user_id = ? AND status = ? ORDER BY created_at DESC LIMIT 1",
        (user_id, int(ThreadStatus.OPEN)),
    ) as cur:
        row = await cur.fetchone()
    return _row_to_thread(row) if row else None


async def thread_list(db: aiosqlite.Connection, status: Optional[ThreadStatus] = None) -> list[Thread]:
    if status is not None:
        async with db.execute(
            "SELECT * FROM threads WHERE status = ? ORDER BY created_at DESC", (int(status),)
        ) as cur:
            rows = await cur.fetchall()
    else:
        async with db.execute("SELECT * FROM threads ORDER BY created_at DESC") as cur:
            rows = await cur.fetchall()
    return [_row_to_thread(r) for r in rows]


async def thread_update(db: aiosqlite.Connection, thread_id: str, fields: dict[str, Any]) -> bool:
    """Write the given columns. Returns False when the thread does not exist."""
    clause, params = _build_set_clause(fields, _THREAD_COLUMNS, _encode_thread_value)
    async with db.execute(f"UPDATE threads SET {clause} WHERE id = ?", (*params, thread_id)) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated > 0


async def thread_update_open(db: aiosqlite.Connection, thread_id: str, fields: dict[str, Any]) -> bool:
    """
    Like thread_update, but refuses to touch a closed thread.
    Returns False when the thread is missing or already closed.
    """
    clause, params = _build_set_clause(fields, _THREAD_COLUMNS, _encode_thread_value)
    async with db.execute(
        f"UPDATE threads SET {clause} WHERE id = ? AND status != ?",
        (*params, thread_id, int(ThreadStatus.CLOSED)),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated > 0


async def thread_get_alert_ids(db: aiosqlite.Connection, thread_id: str) -> list[str]:
    async with db.execute("SELECT alert_ids FROM threads WHERE id = ?", (thread_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        raise LookupError(f"Thread {thread_id} not found")
    return decode_alert_ids(row["alert_ids"])


async def threads_due_for_close(db: aiosqlite.Connection, now: datetime) -> list[Thread]:
    async with db.execute(
        "SELECT * FROM threads WHERE status != ? AND scheduled_close_at IS NOT NULL AND scheduled_close_at <= ? "
        "ORDER BY scheduled_close_at ASC",
        (int(ThreadStatus.CLOSED), _fmt_dt(now)),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_thread(r) for r in rows]


async def threads_due_for_suspend(db: aiosqlite.Connection, now: datetime) -> list[Thread]:
    async with db.execute(
        "SELECT * FROM threads WHERE status = ? AND scheduled_suspend_at IS NOT NULL AND scheduled_suspend_at <= ? "
        "ORDER BY scheduled_suspend_at ASC",
        (int(ThreadStatus.OPEN), _fmt_dt(now)),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_thread(r) for r in rows]


def _row_to_thread(row: aiosqlite.Row) -> Thread:
    silent = row["scheduled_close_silent"]
    return Thread(
        id=row["id"],
        status=ThreadStatus(row["status"]),
        user_id=row["user_id"],
        user_name=row["user_name"],
        channel_id=row["channel_id"],
        next_message_number=row["next_message_number"],
        created_at=_parse_dt(row["created_at"]),
        scheduled_close_at=_parse_dt(row["scheduled_close_at"]),
        scheduled_close_id=row["scheduled_close_id"],
        scheduled_close_name=row["scheduled_close_name"],
        scheduled_close_silent=bool(silent) if silent is not None else None,
        scheduled_suspend_at=_parse_dt(row["scheduled_suspend_at"]),
        scheduled_suspend_id=row["scheduled_suspend_id"],
        scheduled_suspend_name=row["scheduled_suspend_name"],
        alert_ids=decode_alert_ids(row["alert_ids"]),
    )


# ─────────────────────────────────────────────
# Thread message CRUD
# ─────────────────────────────────────────────

async def msg_insert(db: aiosqlite.Connection, message: ThreadMessage) -> ThreadMessage:
    now = _now()
    async with db.execute(
        "INSERT INTO thread_messages (thread_id, message_type, message_number, user_id, user_name, body, "
        "is_anonymous, role_name, attachments, small_attachments, dm_message_id, dm_channel_id, "
        "inbox_message_id, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            message.thread_id, int(message.message_type), message.message_number, message.user_id,
            message.user_name or "", message.body, int(message.is_anonymous), message.role_name,
            json.dumps(message.attachments), json.dumps(message.small_attachments),
            message.dm_message_id, message.dm_channel_id, message.inbox_message_id, now,
        ),
    ) as cur:
        mid = cur.lastrowid
    await db.commit()
    logger.debug(f"Thread message saved: id={mid} type={message.message_type.name} thread={message.thread_id}")
    return await msg_get(db, mid)


async def msg_get(db: aiosqlite.Connection, message_id: int) -> Optional[ThreadMessage]:
    async with db.execute("SELECT * FROM thread_messages WHERE id = ?", (message_id,)) as cur:
        row = await cur.fetchone()
    return _row_to_message(row) if row else None


async def msg_update(db: aiosqlite.Connection, message_id: int, fields: dict[str, Any]) -> bool:
    clause, params = _build_set_clause(fields, _MESSAGE_COLUMNS, _encode_message_value)
    async with db.execute(f"UPDATE thread_messages SET {clause} WHERE id = ?", (*params, message_id)) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated > 0


async def msg_delete(db: aiosqlite.Connection, message_id: int) -> bool:
    async with db.execute("DELETE FROM thread_messages WHERE id = ?", (message_id,)) as cur:
        deleted = cur.rowcount
    await db.commit()
    return deleted > 0


async def msg_update_by_dm_id(
    db: aiosqlite.Connection, thread_id: str, dm_message_id: str, fields: dict[str, Any]
) -> int:
    """Update rows by (thread, DM message id); used for rows that have no staff mirror."""
    clause, params = _build_set_clause(fields, _MESSAGE_COLUMNS, _encode_message_value)
    async with db.execute(
        f"UPDATE thread_messages SET {clause} WHERE thread_id = ? AND dm_message_id = ?",
        (*params, thread_id, dm_message_id),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated


async def msg_delete_by_dm_id(db: aiosqlite.Connection, thread_id: str, dm_message_id: str) -> int:
    async with db.execute(
        "DELETE FROM thread_messages WHERE thread_id = ? AND dm_message_id = ?",
        (thread_id, dm_message_id),
    ) as cur:
        deleted = cur.rowcount
    await db.commit()
    return deleted


async def msg_list(db: aiosqlite.Connection, thread_id: str) -> list[ThreadMessage]:
    async with db.execute(
        "SELECT * FROM thread_messages WHERE thread_id = ? ORDER BY created_at ASC, id ASC",
        (thread_id,),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in rows]


async def msg_find_by_number(db: aiosqlite.Connection, thread_id: str, message_number: int) -> Optional[ThreadMessage]:
    async with db.execute(
        "SELECT * FROM thread_messages WHERE thread_id = ? AND message_number = ?",
        (thread_id, message_number),
    ) as cur:
        row = await cur.fetchone()
    return _row_to_message(row) if row else None


def _row_to_message(row: aiosqlite.Row) -> ThreadMessage:
    return ThreadMessage(
        id=row["id"],
        thread_id=row["thread_id"],
        message_type=MessageType(row["message_type"]),
        message_number=row["message_number"],
        user_id=row["user_id"],
        user_name=row["user_name"] or "",
        body=row["body"],
        is_anonymous=bool(row["is_anonymous"]),
        role_name=row["role_name"],
        attachments=json.loads(row["attachments"]) if row["attachments"] else [],
        small_attachments=json.loads(row["small_attachments"]) if row["small_attachments"] else [],
        dm_message_id=row["dm_message_id"],
        dm_channel_id=row["dm_channel_id"],
        inbox_message_id=row["inbox_message_id"],
        created_at=_parse_dt(row["created_at"]),
    )
