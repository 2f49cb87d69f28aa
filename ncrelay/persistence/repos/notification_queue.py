from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Collection
from uuid import uuid4

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ncrelay.core.config import get_settings
from ncrelay.core.errors import NotificationNotFound, StoreError
from ncrelay.domain.models import (
    QUEUE_STATUS_PENDING,
    QUEUE_STATUS_PROCESSING,
    QUEUE_STATUSES,
    QUEUE_TERMINAL_STATUSES,
    QueuedNotification,
)


logger = logging.getLogger(__name__)

_MAX_LIST_LIMIT = 500
# Columns a caller may change after insert; identity and routing fields stay fixed.
_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "priority",
        "retry_count",
        "max_retries",
        "next_retry_at",
        "last_attempt_at",
        "response_status",
        "response_body",
        "error_details",
    }
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def truncate_text(value: str | None, max_chars: int) -> str | None:
    if value is None:
        return None
    return value[: max(0, int(max_chars))]


def _eligible_clause(now: datetime):
    # Pending rows become eligible once their retry time is unset or has elapsed.
    return or_(QueuedNotification.next_retry_at.is_(None), QueuedNotification.next_retry_at <= now)


def _dispatch_order():
    return (
        QueuedNotification.priority.desc(),
        QueuedNotification.created_at.asc(),
        QueuedNotification.id.asc(),
    )


async def _rollback_and_wrap(session: AsyncSession, exc: SQLAlchemyError, action: str) -> StoreError:
    await session.rollback()
    logger.warning("notification_queue_store_failed action=%s error=%s", action, exc)
    return StoreError(f"notification queue {action} failed: {exc}")


async def insert_notification(
    session: AsyncSession,
    row: QueuedNotification,
    *,
    now: datetime | None = None,
) -> QueuedNotification:
    # New rows always enter the queue as pending with no attempts recorded.
    timestamp = now or _utc_now()
    if not row.id:
        row.id = uuid4().hex
    if row.priority is None:
        row.priority = 0
    if row.max_retries is None:
        row.max_retries = max(0, int(get_settings().queue_default_max_retries))
    row.status = QUEUE_STATUS_PENDING
    row.retry_count = 0
    row.created_at = timestamp
    row.updated_at = timestamp
    session.add(row)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise StoreError(f"notification {row.id} rejected by queue constraints: {exc.orig}") from exc
    except SQLAlchemyError as exc:
        raise await _rollback_and_wrap(session, exc, "insert") from exc
    return row


async def get_notification(session: AsyncSession, notification_id: str) -> QueuedNotification | None:
    # Refresh from the database so rows changed by other workers are not served stale.
    try:
        return await session.get(QueuedNotification, notification_id, populate_existing=True)
    except SQLAlchemyError as exc:
        raise await _rollback_and_wrap(session, exc, "read") from exc


async def require_notification(session: AsyncSession, notification_id: str) -> QueuedNotification:
    row = await get_notification(session, notification_id)
    if row is None:
        raise NotificationNotFound(notification_id)
    return row


async def list_by_status(
    session: AsyncSession,
    status: str,
    *,
    limit: int = 50,
    due_only: bool = False,
    now: datetime | None = None,
) -> list[QueuedNotification]:
    # Order like the dispatcher does so operators see rows in delivery order.
    if status not in QUEUE_STATUSES:
        raise ValueError(f"unknown queue status: {status}")
    bounded_limit = max(1, min(int(limit), _MAX_LIST_LIMIT))
    stmt = select(QueuedNotification).where(QueuedNotification.status == status)
    if due_only and status == QUEUE_STATUS_PENDING:
        stmt = stmt.where(_eligible_clause(now or _utc_now()))
    stmt = stmt.order_by(*_dispatch_order()).limit(bounded_limit)
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def list_for_request(session: AsyncSession, original_request_id: str) -> list[QueuedNotification]:
    # Fan-out view of every delivery created for one inbound request.
    stmt = (
        select(QueuedNotification)
        .where(QueuedNotification.original_request_id == original_request_id)
        .order_by(QueuedNotification.created_at.asc(), QueuedNotification.id.asc())
    )
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def select_claim_candidates(
    session: AsyncSession,
    *,
    limit: int,
    now: datetime,
) -> list[str]:
    # SKIP LOCKED keeps concurrent Postgres claimers off each other's candidates.
    stmt = (
        select(QueuedNotification.id)
        .where(
            QueuedNotification.status == QUEUE_STATUS_PENDING,
            _eligible_clause(now),
        )
        .order_by(*_dispatch_order())
        .limit(max(1, int(limit)))
        .with_for_update(skip_locked=True)
    )
    result = await session.execute(stmt)
    return [str(row_id) for row_id in result.scalars().all()]


async def claim_candidates(
    session: AsyncSession,
    candidate_ids: list[str],
    *,
    now: datetime,
) -> list[str]:
    # Compare-and-swap per row: only a row still pending and due flips to processing.
    claimed: list[str] = []
    for notification_id in candidate_ids:
        result = await session.execute(
            update(QueuedNotification)
            .where(
                QueuedNotification.id == notification_id,
                QueuedNotification.status == QUEUE_STATUS_PENDING,
                _eligible_clause(now),
            )
            .values(status=QUEUE_STATUS_PROCESSING, last_attempt_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) == 1:
            claimed.append(notification_id)
    return claimed


async def claim_eligible_pending(
    session: AsyncSession,
    *,
    limit: int,
    now: datetime | None = None,
) -> list[QueuedNotification]:
    """Atomically move up to ``limit`` due pending rows into processing.

    Rows are returned in dispatch order (priority first, then age). A row lost
    to a concurrent claimer between candidate selection and the conditional
    update is silently skipped, so no id is ever handed to two callers.
    """
    timestamp = now or _utc_now()
    try:
        candidate_ids = await select_claim_candidates(session, limit=limit, now=timestamp)
        claimed_ids = await claim_candidates(session, candidate_ids, now=timestamp)
        await session.commit()
    except SQLAlchemyError as exc:
        raise await _rollback_and_wrap(session, exc, "claim") from exc
    if not claimed_ids:
        return []
    result = await session.execute(
        select(QueuedNotification)
        .where(QueuedNotification.id.in_(claimed_ids))
        .execution_options(populate_existing=True)
    )
    rows_by_id = {row.id: row for row in result.scalars().all()}
    return [rows_by_id[row_id] for row_id in claimed_ids if row_id in rows_by_id]


async def update_notification(
    session: AsyncSession,
    notification_id: str,
    *,
    now: datetime | None = None,
    expected_status: str | Collection[str] | None = None,
    expected_last_attempt_at: datetime | None = None,
    **fields: Any,
) -> None:
    """Merge partial fields into one row and stamp ``updated_at``.

    ``expected_status`` (one status or several) and ``expected_last_attempt_at``
    turn the write into a compare-and-swap: when the row is missing or no
    longer matches, nothing changes and :class:`NotificationNotFound` is raised.
    """
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"cannot update notification fields: {', '.join(sorted(unknown))}")
    if "status" in fields and fields["status"] not in QUEUE_STATUSES:
        raise ValueError(f"unknown queue status: {fields['status']}")
    settings = get_settings()
    values = dict(fields)
    if "response_body" in values:
        values["response_body"] = truncate_text(values["response_body"], settings.queue_response_body_max_chars)
    if "error_details" in values:
        values["error_details"] = truncate_text(values["error_details"], settings.queue_error_details_max_chars)
    values["updated_at"] = now or _utc_now()

    stmt = update(QueuedNotification).where(QueuedNotification.id == notification_id)
    if isinstance(expected_status, str):
        stmt = stmt.where(QueuedNotification.status == expected_status)
    elif expected_status is not None:
        stmt = stmt.where(QueuedNotification.status.in_(tuple(expected_status)))
    if expected_last_attempt_at is not None:
        # The claim stamps last_attempt_at, so it identifies one claim of the row.
        stmt = stmt.where(QueuedNotification.last_attempt_at == expected_last_attempt_at)
    try:
        result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
        if int(result.rowcount or 0) == 0:
            await session.rollback()
            raise NotificationNotFound(notification_id)
        await session.commit()
    except SQLAlchemyError as exc:
        raise await _rollback_and_wrap(session, exc, "update") from exc


async def delete_notification(session: AsyncSession, notification_id: str) -> bool:
    # Idempotent: deleting an absent id is not an error, the return value says whether a row went away.
    try:
        result = await session.execute(
            delete(QueuedNotification)
            .where(QueuedNotification.id == notification_id)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except SQLAlchemyError as exc:
        raise await _rollback_and_wrap(session, exc, "delete") from exc
    return int(result.rowcount or 0) > 0


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    # Always report every status so dashboards never see missing keys.
    result = await session.execute(
        select(QueuedNotification.status, func.count()).group_by(QueuedNotification.status)
    )
    counts = {status: 0 for status in QUEUE_STATUSES}
    for status, count in result.all():
        counts[str(status)] = int(count or 0)
    counts["total"] = sum(counts[status] for status in QUEUE_STATUSES)
    return counts


async def requeue_stale_processing(
    session: AsyncSession,
    *,
    older_than: datetime,
    now: datetime | None = None,
    error_details: str | None = None,
) -> int:
    # Rows whose worker died mid-attempt go back to pending with their retry count untouched.
    values: dict[str, Any] = {
        "status": QUEUE_STATUS_PENDING,
        "next_retry_at": None,
        "updated_at": now or _utc_now(),
    }
    if error_details is not None:
        values["error_details"] = truncate_text(error_details, get_settings().queue_error_details_max_chars)
    try:
        result = await session.execute(
            update(QueuedNotification)
            .where(
                QueuedNotification.status == QUEUE_STATUS_PROCESSING,
                or_(
                    QueuedNotification.last_attempt_at.is_(None),
                    QueuedNotification.last_attempt_at <= older_than,
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except SQLAlchemyError as exc:
        raise await _rollback_and_wrap(session, exc, "requeue") from exc
    return int(result.rowcount or 0)


async def count_stale_processing(session: AsyncSession, *, older_than: datetime) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(QueuedNotification)
        .where(
            QueuedNotification.status == QUEUE_STATUS_PROCESSING,
            or_(
                QueuedNotification.last_attempt_at.is_(None),
                QueuedNotification.last_attempt_at <= older_than,
            ),
        )
    )
    return int(result.scalar_one() or 0)


async def oldest_due_pending_created_at(session: AsyncSession, *, now: datetime) -> datetime | None:
    result = await session.execute(
        select(func.min(QueuedNotification.created_at)).where(
            QueuedNotification.status == QUEUE_STATUS_PENDING,
            _eligible_clause(now),
        )
    )
    return as_utc(result.scalar_one_or_none())


async def delete_terminal_before(session: AsyncSession, *, cutoff: datetime) -> int:
    # Inclusive cutoff: a terminal row updated exactly at the cutoff is purged.
    try:
        result = await session.execute(
            delete(QueuedNotification)
            .where(
                QueuedNotification.status.in_(QUEUE_TERMINAL_STATUSES),
                QueuedNotification.updated_at <= cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except SQLAlchemyError as exc:
        raise await _rollback_and_wrap(session, exc, "cleanup") from exc
    return int(result.rowcount or 0)
