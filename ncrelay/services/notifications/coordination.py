from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from redis.exceptions import RedisError

from ncrelay.core.config import get_settings


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()

# Keep keys stable for health lookups across API and worker processes.
WORKER_HEARTBEAT_KEY = "ncrelay:queue:worker:heartbeat"
CLEANUP_LOCK_KEY = "ncrelay:queue:cleanup:lock"

_local_cleanup_lock = asyncio.Lock()
_local_cleanup_owner: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


async def get_redis_pool():
    # Cache the arq pool per event loop; loop-bound pools break across test loops.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.notify_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def _redis_or_none():
    try:
        return await get_redis_pool()
    except (RedisError, OSError) as exc:
        logger.warning("queue_redis_unavailable error=%s", exc)
        return None


async def enqueue_queue_job(function_name: str, **kwargs: Any) -> str | None:
    # Hand a pass to the arq worker; None means Redis could not accept it.
    redis = await _redis_or_none()
    if redis is None:
        return None
    try:
        job = await redis.enqueue_job(function_name, **kwargs)
    except (RedisError, OSError) as exc:
        logger.warning("queue_job_enqueue_failed function=%s error=%s", function_name, exc)
        return None
    return job.job_id if job is not None else None


async def get_job_queue_depth() -> int | None:
    # None signals Redis unavailability to health consumers.
    redis = await _redis_or_none()
    if redis is None:
        return None
    try:
        return int(await redis.zcard(_queue_key(get_settings().notify_queue_name)))
    except (RedisError, OSError):
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    redis = await _redis_or_none()
    if redis is None:
        return
    heartbeat = timestamp or _utc_now()
    ttl_s = max(60, int(get_settings().worker_heartbeat_stale_after_s) * 10)
    try:
        await redis.set(WORKER_HEARTBEAT_KEY, heartbeat.isoformat(), ex=ttl_s)
    except (RedisError, OSError) as exc:
        logger.warning("queue_worker_heartbeat_failed error=%s", exc)


async def get_worker_heartbeat() -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    redis = await _redis_or_none()
    if redis is None:
        return None
    try:
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except (RedisError, OSError):
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


@dataclass(slots=True)
class CleanupLock:
    token: str
    redis: Any | None
    local: bool


async def acquire_cleanup_lock() -> CleanupLock | None:
    # One worker runs retention at a time; several schedulers may be deployed.
    global _local_cleanup_owner
    token = uuid4().hex
    ttl_s = max(5, int(get_settings().queue_cleanup_lock_ttl_s))
    redis = await _redis_or_none()
    if redis is not None:
        try:
            acquired = await redis.set(CLEANUP_LOCK_KEY, token, nx=True, ex=ttl_s)
        except (RedisError, OSError) as exc:
            logger.warning("queue_cleanup_lock_failed error=%s", exc)
        else:
            if not acquired:
                return None
            return CleanupLock(token=token, redis=redis, local=False)

    # Fall back to an in-process lock for local runs without Redis.
    if _local_cleanup_lock.locked():
        return None
    await _local_cleanup_lock.acquire()
    _local_cleanup_owner = token
    return CleanupLock(token=token, redis=None, local=True)


async def release_cleanup_lock(lock: CleanupLock) -> None:
    # Release only while still the owner so a newer holder is never clobbered.
    global _local_cleanup_owner
    if lock.local:
        if _local_cleanup_lock.locked() and _local_cleanup_owner == lock.token:
            _local_cleanup_owner = None
            _local_cleanup_lock.release()
        return
    if lock.redis is None:
        return
    try:
        current = await lock.redis.get(CLEANUP_LOCK_KEY)
        if current is not None:
            current = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current)
        if current == lock.token:
            await lock.redis.delete(CLEANUP_LOCK_KEY)
    except (RedisError, OSError) as exc:
        logger.warning("queue_cleanup_lock_release_failed error=%s", exc)
