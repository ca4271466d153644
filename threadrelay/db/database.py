"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path

from threadrelay.config import DB_PATH

logger = logging.getLogger(__name__)

# Module-level connection (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                if DB_PATH != ":memory:":
                    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
                _db = await connect(DB_PATH)
                logger.info(f"Database initialized at {DB_PATH}")
    return _db


async def connect(path: str) -> aiosqlite.Connection:
    """Open a new connection configured the way the relay expects it."""
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    # WAL mode: allows concurrent reads while writing
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await init_schema(db)
    return db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Thread: one conversation between a user and the staff group
        -- status: 1 = open, 2 = closed, 3 = suspended
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS threads (
            id                      TEXT PRIMARY KEY,
            status                  INTEGER NOT NULL DEFAULT 1,
            user_id                 TEXT NOT NULL,
            user_name               TEXT NOT NULL,
            channel_id              TEXT NOT NULL,
            next_message_number     INTEGER NOT NULL DEFAULT 1,
            scheduled_close_at      TEXT,
            scheduled_close_id      TEXT,
            scheduled_close_name    TEXT,
            scheduled_close_silent  INTEGER,
            scheduled_suspend_at    TEXT,
            scheduled_suspend_id    TEXT,
            scheduled_suspend_name  TEXT,
            alert_ids               TEXT,
            created_at              TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_threads_user_status
            ON threads(user_id, status);

        -- ----------------------------------------------------------------
        -- Thread message: one transcript entry, optionally mirrored to
        -- both the user's DM channel and the staff channel.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS thread_messages (
            id                  INTEGER PRIMARY KEY AUTOINCREMENT,
            thread_id           TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
            message_type        INTEGER NOT NULL,
            message_number      INTEGER,
            user_id             TEXT,
            user_name           TEXT NOT NULL DEFAULT '',
            body                TEXT NOT NULL,
            is_anonymous        INTEGER NOT NULL DEFAULT 0,
            role_name           TEXT,
            attachments         TEXT,
            small_attachments   TEXT,
            dm_message_id       TEXT,
            dm_channel_id       TEXT,
            inbox_message_id    TEXT,
            created_at          TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_thread_messages_thread_created
            ON thread_messages(thread_id, created_at, id);

        CREATE INDEX IF NOT EXISTS idx_thread_messages_dm
            ON thread_messages(thread_id, dm_message_id);

        -- Message numbers are handed out once per thread and never reused
        CREATE UNIQUE INDEX IF NOT EXISTS idx_thread_messages_number
            ON thread_messages(thread_id, message_number)
            WHERE message_number IS NOT NULL;
    """)
    await db.commit()
    logger.info("Schema initialized.")
