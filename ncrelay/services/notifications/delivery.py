from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Callable, ClassVar, Union

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ncrelay.core.config import get_settings
from ncrelay.core.errors import DeliveryRejected, NotificationNotFound, TransportFailure
from ncrelay.domain.models import (
    QUEUE_STATUS_COMPLETED,
    QUEUE_STATUS_FAILED,
    QUEUE_STATUS_PENDING,
    QUEUE_STATUS_PROCESSING,
    QueuedNotification,
)
from ncrelay.persistence.repos import notification_queue as queue_repo
from ncrelay.services.notifications.retry_policy import RetryPolicy
from ncrelay.services.telemetry import increment_counter, record_delivery


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Delivered:
    kind: ClassVar[str] = "delivered"
    response_status: int
    response_body: str | None


@dataclass(frozen=True)
class Retryable:
    kind: ClassVar[str] = "retryable"
    error: str
    retry_count: int
    delay: timedelta
    response_status: int | None = None
    response_body: str | None = None


@dataclass(frozen=True)
class Exhausted:
    kind: ClassVar[str] = "exhausted"
    error: str
    retry_count: int
    response_status: int | None = None
    response_body: str | None = None


DeliveryOutcome = Union[Delivered, Retryable, Exhausted]


def build_delivery_headers(row: QueuedNotification) -> dict[str, str]:
    # Downstream platforms only see the stored content type and the relay identity.
    return {
        "Content-Type": row.content_type or "application/json",
        "User-Agent": get_settings().queue_user_agent,
        "X-NCRelay-Notification-Id": row.id,
    }


def build_delivery_client(*, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    # One client per pass; the timeout covers connect through reading the body.
    timeout_s = max(0.1, float(get_settings().queue_delivery_timeout_s))
    return httpx.AsyncClient(timeout=timeout_s, transport=transport, follow_redirects=False)


def _transport_error_message(exc: Exception) -> str:
    detail = str(exc).strip()
    if not detail:
        return type(exc).__name__
    return f"{type(exc).__name__}: {detail}"


async def post_webhook(client: httpx.AsyncClient, row: QueuedNotification) -> httpx.Response:
    """POST the stored payload verbatim to the row's webhook URL.

    Raises :class:`TransportFailure` for anything that prevents a response
    from arriving, timeouts included.
    """
    try:
        return await client.post(
            row.webhook_url,
            content=(row.payload or "").encode("utf-8"),
            headers=build_delivery_headers(row),
        )
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise TransportFailure(_transport_error_message(exc)) from exc


async def attempt_delivery(
    row: QueuedNotification,
    *,
    client: httpx.AsyncClient,
    policy: RetryPolicy,
) -> DeliveryOutcome:
    # Make exactly one attempt and classify it; persistence happens in apply_outcome.
    settings = get_settings()
    response_status: int | None = None
    response_body: str | None = None
    started = time.monotonic()
    try:
        response = await post_webhook(client, row)
    except TransportFailure as exc:
        error = str(exc)
    else:
        response_status = int(response.status_code)
        response_body = queue_repo.truncate_text(response.text, settings.queue_response_body_max_chars)
        if 200 <= response_status < 300:
            record_delivery(
                platform=row.platform,
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=True,
            )
            return Delivered(response_status=response_status, response_body=response_body)
        error = str(DeliveryRejected(response_status, response_body))
    record_delivery(
        platform=row.platform,
        latency_ms=(time.monotonic() - started) * 1000.0,
        success=False,
    )

    decision, retry_count = policy.after_failed_attempt(row.retry_count, row.max_retries)
    if decision.retry:
        return Retryable(
            error=error,
            retry_count=retry_count,
            delay=decision.delay,
            response_status=response_status,
            response_body=response_body,
        )
    return Exhausted(
        error=error,
        retry_count=retry_count,
        response_status=response_status,
        response_body=response_body,
    )


async def apply_outcome(
    session: AsyncSession,
    notification_id: str,
    outcome: DeliveryOutcome,
    *,
    now: datetime | None = None,
    claimed_at: datetime | None = None,
) -> None:
    # Only the claim that made the attempt may record its outcome; a requeued and reclaimed row is left alone.
    timestamp = now or _utc_now()
    if isinstance(outcome, Delivered):
        await queue_repo.update_notification(
            session,
            notification_id,
            now=timestamp,
            expected_status=QUEUE_STATUS_PROCESSING,
            expected_last_attempt_at=claimed_at,
            status=QUEUE_STATUS_COMPLETED,
            next_retry_at=None,
            response_status=outcome.response_status,
            response_body=outcome.response_body,
        )
    elif isinstance(outcome, Retryable):
        await queue_repo.update_notification(
            session,
            notification_id,
            now=timestamp,
            expected_status=QUEUE_STATUS_PROCESSING,
            expected_last_attempt_at=claimed_at,
            status=QUEUE_STATUS_PENDING,
            retry_count=outcome.retry_count,
            next_retry_at=timestamp + outcome.delay,
            error_details=outcome.error,
            response_status=outcome.response_status,
            response_body=outcome.response_body,
        )
    elif isinstance(outcome, Exhausted):
        await queue_repo.update_notification(
            session,
            notification_id,
            now=timestamp,
            expected_status=QUEUE_STATUS_PROCESSING,
            expected_last_attempt_at=claimed_at,
            status=QUEUE_STATUS_FAILED,
            retry_count=outcome.retry_count,
            next_retry_at=None,
            error_details=outcome.error,
            response_status=outcome.response_status,
            response_body=outcome.response_body,
        )
    else:
        raise TypeError(f"unsupported delivery outcome: {outcome!r}")


async def deliver_notification(
    row: QueuedNotification,
    *,
    client: httpx.AsyncClient,
    policy: RetryPolicy,
    session_factory: Callable[[], AsyncSession],
    now: datetime | None = None,
) -> str:
    """Deliver one claimed row and persist the result in its own session.

    Returns the outcome kind, or ``"error"`` when the attempt or the write
    failed unexpectedly. In that case the row stays in processing until the
    reconciliation sweep returns it to pending. Never raises.
    """
    try:
        outcome = await attempt_delivery(row, client=client, policy=policy)
        async with session_factory() as session:
            await apply_outcome(session, row.id, outcome, now=now or _utc_now(), claimed_at=row.last_attempt_at)
    except NotificationNotFound:
        # Deleted, requeued or reclaimed while the POST was in flight.
        logger.warning("queue_outcome_discarded notification_id=%s reason=row_not_processing", row.id)
        increment_counter("queue.outcomes_discarded")
        return "error"
    except Exception:  # noqa: BLE001 - one broken delivery must not abort the batch.
        logger.exception("queue_delivery_failed notification_id=%s", row.id)
        increment_counter("queue.delivery_errors")
        return "error"

    if isinstance(outcome, Delivered):
        increment_counter("queue.delivered")
        logger.info(
            "queue_delivery_succeeded notification_id=%s platform=%s status=%s",
            row.id,
            row.platform,
            outcome.response_status,
        )
    elif isinstance(outcome, Retryable):
        increment_counter("queue.retried")
        logger.info(
            "queue_delivery_retry_scheduled notification_id=%s retry_count=%s delay_s=%s error=%s",
            row.id,
            outcome.retry_count,
            int(outcome.delay.total_seconds()),
            outcome.error,
        )
    else:
        increment_counter("queue.exhausted")
        logger.warning(
            "queue_delivery_exhausted notification_id=%s retry_count=%s error=%s",
            row.id,
            outcome.retry_count,
            outcome.error,
        )
    return outcome.kind
