from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
import logging
import time
from typing import Any, Awaitable, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ncrelay.core.config import get_settings
from ncrelay.core.errors import BulkLimitExceeded, NotificationNotFound, StoreError
from ncrelay.domain.models import (
    QUEUE_STATUS_COMPLETED,
    QUEUE_STATUS_FAILED,
    QUEUE_STATUS_PENDING,
    QueuedNotification,
)
from ncrelay.persistence.db import SessionLocal
from ncrelay.persistence.repos import notification_queue as queue_repo
from ncrelay.services.notifications.delivery import build_delivery_client, deliver_notification
from ncrelay.services.notifications.kill_switch import is_queue_processing_enabled
from ncrelay.services.notifications.retry_policy import RetryPolicy
from ncrelay.services.telemetry import increment_counter, record_queue_pass, set_gauge


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]
KillSwitchReader = Callable[[], Awaitable[bool]]

BULK_ACTIONS = ("retry", "delete", "cancel")
NOT_IN_FAILED_STATE_MESSAGE = "Notification not found or not in failed state"
_BULK_FAILURE_REASONS = {
    "retry": "Not found or not in failed state",
    "delete": "Not found",
    "cancel": "Not found or currently processing",
}
NOT_DEFERRABLE_MESSAGE = "Notification not found or currently processing"
_STUCK_REQUEUE_MESSAGE = "Requeued after processing timeout"
_DEFERRABLE_STATUSES = (QUEUE_STATUS_PENDING, QUEUE_STATUS_COMPLETED, QUEUE_STATUS_FAILED)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QueueProcessResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    errors: int = 0
    skipped_reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BulkResult:
    action: str
    successful: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return f"Bulk {self.action} completed: {self.successful} successful, {self.failed} failed"

    def as_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "successful": self.successful,
            "failed": self.failed,
            "errors": list(self.errors),
            "message": self.message,
        }


async def _read_kill_switch(session_factory: SessionFactory) -> bool:
    async with session_factory() as session:
        return await is_queue_processing_enabled(session)


async def process_queue(
    *,
    limit: int | None = None,
    session_factory: SessionFactory | None = None,
    client: httpx.AsyncClient | None = None,
    policy: RetryPolicy | None = None,
    is_enabled: KillSwitchReader | None = None,
    concurrency: int | None = None,
    now: datetime | None = None,
    trigger: str = "manual",
) -> QueueProcessResult:
    """Run one processing pass: gate, claim, deliver, aggregate.

    The kill switch is read once before claiming. Claimed rows are delivered
    concurrently, at most ``concurrency`` at a time, each in its own session.
    Delivery failures are folded into the counts and never raised.
    """
    settings = get_settings()
    factory = session_factory or SessionLocal
    batch = max(1, int(limit if limit is not None else settings.queue_manual_batch_size))
    reader = is_enabled or partial(_read_kill_switch, factory)
    if not await reader():
        logger.info("queue_pass_skipped trigger=%s reason=disabled", trigger)
        return QueueProcessResult(skipped_reason="disabled")

    started = time.monotonic()
    async with factory() as session:
        rows = await queue_repo.claim_eligible_pending(session, limit=batch, now=now)
    if not rows:
        record_queue_pass(trigger=trigger, duration_ms=(time.monotonic() - started) * 1000.0, processed=0)
        return QueueProcessResult()

    retry_policy = policy or RetryPolicy.from_settings()
    semaphore = asyncio.Semaphore(max(1, int(concurrency or settings.queue_worker_concurrency)))
    http_client = client or build_delivery_client()

    async def _deliver(row: QueuedNotification) -> str:
        async with semaphore:
            return await deliver_notification(
                row,
                client=http_client,
                policy=retry_policy,
                session_factory=factory,
                now=now,
            )

    try:
        kinds = await asyncio.gather(*(_deliver(row) for row in rows))
    finally:
        if client is None:
            await http_client.aclose()

    result = QueueProcessResult(
        processed=len(rows),
        succeeded=kinds.count("delivered"),
        failed=kinds.count("exhausted"),
        retried=kinds.count("retryable"),
        errors=kinds.count("error"),
    )
    duration_ms = (time.monotonic() - started) * 1000.0
    record_queue_pass(trigger=trigger, duration_ms=duration_ms, processed=result.processed)
    increment_counter("queue.processed", result.processed)
    logger.info(
        "queue_pass_completed trigger=%s processed=%s succeeded=%s failed=%s retried=%s errors=%s duration_ms=%.1f",
        trigger,
        result.processed,
        result.succeeded,
        result.failed,
        result.retried,
        result.errors,
        duration_ms,
    )
    return result


async def get_queue_stats(session: AsyncSession) -> dict[str, int]:
    counts = await queue_repo.count_by_status(session)
    for status, value in counts.items():
        set_gauge(f"queue.size.{status}", value)
    return counts


async def get_queued_notification(session: AsyncSession, notification_id: str) -> QueuedNotification:
    return await queue_repo.require_notification(session, notification_id)


async def retry_failed_notification(
    session: AsyncSession,
    notification_id: str,
    *,
    now: datetime | None = None,
) -> None:
    # Only failed rows go back to pending; the retry count is kept so the next failure can still exhaust.
    row = await queue_repo.get_notification(session, notification_id)
    if row is None or row.status != QUEUE_STATUS_FAILED:
        raise NotificationNotFound(notification_id, NOT_IN_FAILED_STATE_MESSAGE)
    fields: dict[str, Any] = {"status": QUEUE_STATUS_PENDING, "next_retry_at": None}
    if row.error_details:
        fields["error_details"] = f"Manually retried after error: {row.error_details}"
    try:
        await queue_repo.update_notification(
            session,
            notification_id,
            now=now,
            expected_status=QUEUE_STATUS_FAILED,
            **fields,
        )
    except NotificationNotFound as exc:
        raise NotificationNotFound(notification_id, NOT_IN_FAILED_STATE_MESSAGE) from exc
    logger.info("queue_notification_manual_retry notification_id=%s", notification_id)


async def _defer_idle_notification(
    session: AsyncSession,
    notification_id: str,
    *,
    until: datetime,
    now: datetime,
) -> None:
    # A row in processing belongs to an in-flight attempt whose outcome would overwrite the deferral.
    try:
        await queue_repo.update_notification(
            session,
            notification_id,
            now=now,
            expected_status=_DEFERRABLE_STATUSES,
            next_retry_at=until,
        )
    except NotificationNotFound as exc:
        raise NotificationNotFound(notification_id, NOT_DEFERRABLE_MESSAGE) from exc


async def pause_notification(
    session: AsyncSession,
    notification_id: str,
    *,
    now: datetime | None = None,
) -> datetime:
    # Push the retry time out without touching status.
    timestamp = now or _utc_now()
    resume_at = timestamp + timedelta(days=max(0, int(get_settings().queue_pause_days)))
    await _defer_idle_notification(session, notification_id, until=resume_at, now=timestamp)
    logger.info("queue_notification_paused notification_id=%s resume_at=%s", notification_id, resume_at.isoformat())
    return resume_at


async def cancel_notification(
    session: AsyncSession,
    notification_id: str,
    *,
    now: datetime | None = None,
) -> datetime:
    # Defer indefinitely instead of deleting so the row stays available for audit.
    timestamp = now or _utc_now()
    deferred_until = timestamp + timedelta(days=max(0, int(get_settings().queue_cancel_days)))
    await _defer_idle_notification(session, notification_id, until=deferred_until, now=timestamp)
    logger.info("queue_notification_cancelled notification_id=%s", notification_id)
    return deferred_until


async def delete_queued_notification(
    session: AsyncSession,
    notification_id: str,
    *,
    now: datetime | None = None,
) -> None:
    # Operator delete reports unknown ids; the store-level delete stays idempotent.
    removed = await queue_repo.delete_notification(session, notification_id)
    if not removed:
        raise NotificationNotFound(notification_id)
    logger.info("queue_notification_deleted notification_id=%s", notification_id)


_BULK_OPERATIONS: dict[str, Callable[..., Awaitable[Any]]] = {
    "retry": retry_failed_notification,
    "delete": delete_queued_notification,
    "cancel": cancel_notification,
}


def _validate_bulk_ids(notification_ids: list[str]) -> list[str]:
    if not notification_ids:
        raise ValueError("Notification IDs are required")
    limit = max(1, int(get_settings().queue_bulk_max_ids))
    if len(notification_ids) > limit:
        raise BulkLimitExceeded(limit)
    return [str(notification_id) for notification_id in notification_ids]


async def run_bulk_action(
    action: str,
    notification_ids: list[str],
    *,
    session_factory: SessionFactory | None = None,
    now: datetime | None = None,
) -> BulkResult:
    """Apply one single-row operation to each id, collecting per-id failures.

    Ids are handled sequentially, each in its own transaction, so one bad id
    never rolls back or blocks the others.
    """
    if action not in BULK_ACTIONS:
        raise ValueError(f"Invalid action. Must be one of: {', '.join(BULK_ACTIONS)}")
    ids = _validate_bulk_ids(notification_ids)
    factory = session_factory or SessionLocal
    operation = _BULK_OPERATIONS[action]
    result = BulkResult(action=action)
    for notification_id in ids:
        try:
            async with factory() as session:
                await operation(session, notification_id, now=now)
        except NotificationNotFound:
            result.failed += 1
            result.errors.append(f"{notification_id}: {_BULK_FAILURE_REASONS[action]}")
        except StoreError as exc:
            result.failed += 1
            result.errors.append(f"{notification_id}: {exc}")
        else:
            result.successful += 1
    logger.info(
        "queue_bulk_action action=%s successful=%s failed=%s",
        action,
        result.successful,
        result.failed,
    )
    return result


async def bulk_retry(notification_ids: list[str], **kwargs: Any) -> BulkResult:
    return await run_bulk_action("retry", notification_ids, **kwargs)


async def bulk_delete(notification_ids: list[str], **kwargs: Any) -> BulkResult:
    return await run_bulk_action("delete", notification_ids, **kwargs)


async def bulk_cancel(notification_ids: list[str], **kwargs: Any) -> BulkResult:
    return await run_bulk_action("cancel", notification_ids, **kwargs)


async def reconcile_stuck_notifications(
    session: AsyncSession,
    *,
    timeout_s: int | None = None,
    now: datetime | None = None,
) -> int:
    # Return rows abandoned in processing (crashed worker, lost write) to pending.
    timestamp = now or _utc_now()
    timeout = int(timeout_s if timeout_s is not None else get_settings().queue_processing_timeout_s)
    older_than = timestamp - timedelta(seconds=max(0, timeout))
    requeued = await queue_repo.requeue_stale_processing(
        session,
        older_than=older_than,
        now=timestamp,
        error_details=_STUCK_REQUEUE_MESSAGE,
    )
    if requeued:
        increment_counter("queue.requeued_stuck", requeued)
        logger.warning("queue_stuck_notifications_requeued count=%s timeout_s=%s", requeued, timeout)
    return requeued
