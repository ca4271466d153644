"""
Alert registry: staff members waiting to be pinged on the next user reply.
"""
import logging

import aiosqlite

from threadrelay.db import crud
from threadrelay.db.models import Thread

logger = logging.getLogger(__name__)


async def add_alert(db: aiosqlite.Connection, thread: Thread, user_id: str) -> None:
    alerts = await crud.thread_get_alert_ids(db, thread.id)
    if user_id in alerts:
        thread.alert_ids = alerts
        return
    alerts.append(user_id)
    await crud.thread_update(db, thread.id, {"alert_ids": alerts})
    thread.alert_ids = alerts
    logger.debug(f"Alert added for {user_id} in thread {thread.id}")


async def remove_alert(db: aiosqlite.Connection, thread: Thread, user_id: str) -> None:
    alerts = await crud.thread_get_alert_ids(db, thread.id)
    if user_id not in alerts:
        thread.alert_ids = alerts
        return
    alerts = [a for a in alerts if a != user_id]
    # An exhausted set is stored as NULL
    await crud.thread_update(db, thread.id, {"alert_ids": alerts})
    thread.alert_ids = alerts
    logger.debug(f"Alert removed for {user_id} in thread {thread.id}")


async def delete_alerts(db: aiosqlite.Connection, thread: Thread) -> None:
    await crud.thread_update(db, thread.id, {"alert_ids": []})
    thread.alert_ids = []
