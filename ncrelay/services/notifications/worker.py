from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from ncrelay.core.config import get_settings
from ncrelay.core.errors import StoreError
from ncrelay.persistence.db import SessionLocal
from ncrelay.services.notifications import coordination
from ncrelay.services.notifications.kill_switch import is_queue_processing_enabled
from ncrelay.services.notifications.queue import process_queue, reconcile_stuck_notifications
from ncrelay.services.notifications.retention import cleanup_old_notifications


logger = logging.getLogger(__name__)


def _is_missing_table_error(exc: Exception) -> bool:
    # Allow worker loops to start before migrations by treating missing-table errors as temporary.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


async def run_queue_processing_cycle(*, limit: int | None = None) -> dict[str, Any]:
    """One scheduled pass: sweep stuck rows, then deliver a batch.

    Both steps are skipped while the kill switch is off.
    """
    settings = get_settings()
    batch = max(1, int(limit if limit is not None else settings.queue_batch_size))
    try:
        async with SessionLocal() as session:
            if not await is_queue_processing_enabled(session):
                await coordination.set_worker_heartbeat()
                return {"status": "disabled", "requeued": 0, "processed": 0, "succeeded": 0, "failed": 0}
            requeued = await reconcile_stuck_notifications(session)
        result = await process_queue(limit=batch, trigger="scheduled")
    except (SQLAlchemyError, StoreError) as exc:
        if _is_missing_table_error(exc):
            return {"status": "waiting_for_migrations", "requeued": 0, "processed": 0, "succeeded": 0, "failed": 0}
        raise
    await coordination.set_worker_heartbeat()
    return {
        "status": result.skipped_reason or "ok",
        "requeued": requeued,
        "processed": result.processed,
        "succeeded": result.succeeded,
        "failed": result.failed,
    }


async def run_queue_cleanup_cycle(*, max_age_days: int | None = None) -> dict[str, Any]:
    # Only one worker purges at a time when several schedulers share the database.
    lock = await coordination.acquire_cleanup_lock()
    if lock is None:
        return {"status": "skipped_lock", "deleted": 0}
    try:
        async with SessionLocal() as session:
            deleted = await cleanup_old_notifications(session, max_age_days=max_age_days)
    except (SQLAlchemyError, StoreError) as exc:
        if _is_missing_table_error(exc):
            return {"status": "waiting_for_migrations", "deleted": 0}
        raise
    finally:
        await coordination.release_cleanup_lock(lock)
    return {"status": "ok", "deleted": deleted}


async def run_queue_scheduler_loop() -> None:
    # Processing runs every poll interval; cleanup piggybacks on the same loop at its own cadence.
    settings = get_settings()
    poll_interval = max(1, int(settings.queue_poll_interval_s))
    cleanup_interval = max(poll_interval, int(settings.queue_cleanup_interval_s))
    last_cleanup: float | None = None
    while True:
        try:
            await run_queue_processing_cycle()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("notification queue processing cycle failed")
        if last_cleanup is None or time.monotonic() - last_cleanup >= cleanup_interval:
            try:
                await run_queue_cleanup_cycle()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("notification queue cleanup cycle failed")
            last_cleanup = time.monotonic()
        await asyncio.sleep(poll_interval)
