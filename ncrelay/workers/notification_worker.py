from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from ncrelay.core.config import get_settings
from ncrelay.core.logging import configure_logging
from ncrelay.services.notifications.worker import (
    run_queue_cleanup_cycle,
    run_queue_processing_cycle,
    run_queue_scheduler_loop,
)

logger = logging.getLogger(__name__)


async def process_notification_queue(ctx, limit: int | None = None) -> dict:
    # Ad-hoc pass enqueued by operators or scripts; shares the claim path with the scheduler.
    return await run_queue_processing_cycle(limit=limit)


async def cleanup_notification_queue(ctx, max_age_days: int | None = None) -> dict:
    return await run_queue_cleanup_cycle(max_age_days=max_age_days)


async def _startup(ctx) -> None:
    # Start the scheduler with the worker so retries continue even when API traffic is idle.
    configure_logging()
    ctx["scheduler_task"] = asyncio.create_task(run_queue_scheduler_loop())
    logger.info("notification queue scheduler started")


async def _shutdown(ctx) -> None:
    # Cancel scheduler task on shutdown to avoid dangling coroutines in tests and local runs.
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_queue_name
    # Delivery retries live in the queue rows, not in arq job retries.
    max_tries = 1
    functions = [process_notification_queue, cleanup_notification_queue]
    on_startup = _startup
    on_shutdown = _shutdown
