"""
ThreadRelay transcript server.

Starts a FastAPI HTTP server that:
  1. Serves thread transcripts at /logs/{thread_id} (the target of thread log links)
  2. Provides a small read-only REST API over threads and their messages
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException

from threadrelay.config import HOST, PORT, RELAY_VERSION, get_config_dict
from threadrelay.db import crud
from threadrelay.db.database import close_db, get_db
from threadrelay.db.models import Thread, ThreadMessage, ThreadStatus

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("threadrelay")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: initialize DB
    await get_db()
    logger.info(f"ThreadRelay transcript server running at http://{HOST}:{PORT}")
    yield
    # Shutdown: close DB
    await close_db()


app = FastAPI(
    title="ThreadRelay",
    description="Transcripts of relayed user/staff conversations.",
    version=RELAY_VERSION,
    lifespan=lifespan,
)


def _dt(value) -> Optional[str]:
    return value.isoformat() if value else None


def _thread_to_dict(t: Thread) -> dict:
    return {
        "id": t.id,
        "status": t.status.name.lower(),
        "user_id": t.user_id,
        "user_name": t.user_name,
        "channel_id": t.channel_id,
        "created_at": _dt(t.created_at),
        "scheduled_close_at": _dt(t.scheduled_close_at),
        "scheduled_suspend_at": _dt(t.scheduled_suspend_at),
    }


def _message_to_dict(m: ThreadMessage) -> dict:
    return {
        "id": m.id,
        "type": m.message_type.name.lower(),
        "message_number": m.message_number,
        "user_id": m.user_id,
        # Anonymous replies keep the author in the database but not in the transcript
        "user_name": (m.role_name or "Staff") if m.is_anonymous else m.user_name,
        "body": m.body,
        "is_anonymous": m.is_anonymous,
        "attachments": m.attachments,
        "created_at": _dt(m.created_at),
    }


async def _get_thread_or_404(thread_id: str) -> Thread:
    db = await get_db()
    thread = await crud.thread_get(db, thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail=f"Thread {thread_id} not found")
    return thread


# ─────────────────────────────────────────────
# REST API
# ─────────────────────────────────────────────

@app.get("/api/threads")
async def api_threads(status: Optional[str] = None):
    db = await get_db()
    status_filter = None
    if status:
        try:
            status_filter = ThreadStatus[status.upper()]
        except KeyError:
            raise HTTPException(status_code=400, detail=f"Invalid status '{status}'") from None
    threads = await crud.thread_list(db, status=status_filter)
    return [_thread_to_dict(t) for t in threads]


@app.get("/api/threads/{thread_id}")
async def api_thread(thread_id: str):
    return _thread_to_dict(await _get_thread_or_404(thread_id))


@app.get("/api/threads/{thread_id}/messages")
async def api_messages(thread_id: str):
    thread = await _get_thread_or_404(thread_id)
    db = await get_db()
    return [_message_to_dict(m) for m in await crud.msg_list(db, thread.id)]


@app.get("/logs/{thread_id}")
async def thread_log(thread_id: str):
    """Full transcript of one thread, in the order the messages were logged."""
    thread = await _get_thread_or_404(thread_id)
    db = await get_db()
    messages = await crud.msg_list(db, thread.id)
    return {"thread": _thread_to_dict(thread), "messages": [_message_to_dict(m) for m in messages]}


@app.get("/api/config")
async def api_config():
    return get_config_dict()


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "service": "ThreadRelay"}


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("threadrelay.main:app", host=HOST, port=PORT, reload=True)
