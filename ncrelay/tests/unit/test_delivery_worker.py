from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest

from ncrelay.core.config import get_settings
from ncrelay.persistence.db import SessionLocal
from ncrelay.persistence.repos import notification_queue as queue_repo
from ncrelay.persistence.repos.notification_queue import as_utc
from ncrelay.services.notifications import delivery as delivery_module
from ncrelay.services.notifications import queue as queue_module
from ncrelay.services.notifications.delivery import deliver_notification
from ncrelay.services.notifications.kill_switch import set_queue_processing_enabled
from ncrelay.services.notifications.queue import process_queue
from ncrelay.services.notifications.retry_policy import RetryPolicy
from ncrelay.services.telemetry import counters_snapshot, delivery_latency_by_platform
from ncrelay.tests.utils.notifications import (
    BASE_NOW,
    WEBHOOK_URL,
    RecordingWebhook,
    add_notification,
    load,
    webhook_client,
)


@pytest.mark.asyncio
async def test_successful_delivery_completes_row_and_posts_payload_verbatim() -> None:
    row_id = await add_notification(payload='{"text": "build #42 passed"}')
    webhook = RecordingWebhook(200, body="ok")

    async with webhook_client(webhook) as client:
        result = await process_queue(client=client, now=BASE_NOW)

    assert result.as_dict() == {
        "processed": 1,
        "succeeded": 1,
        "failed": 0,
        "retried": 0,
        "errors": 0,
        "skipped_reason": None,
    }
    request = webhook.requests[0]
    assert request.method == "POST"
    assert str(request.url) == WEBHOOK_URL
    assert request.content == b'{"text": "build #42 passed"}'
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["User-Agent"] == "NCRelay/1.0"
    assert request.headers["X-NCRelay-Notification-Id"] == row_id

    stored = await load(row_id)
    assert stored.status == "completed"
    assert stored.response_status == 200
    assert stored.response_body == "ok"
    assert stored.retry_count == 0
    assert stored.next_retry_at is None
    assert counters_snapshot()["queue.delivered"] == 1
    assert delivery_latency_by_platform(3600)["slack"]["count"] == 1


@pytest.mark.asyncio
async def test_server_errors_back_off_then_exhaust_into_failed() -> None:
    row_id = await add_notification(max_retries=3)
    webhook = RecordingWebhook(500, body="upstream down")
    clock = BASE_NOW
    retry_times = []

    async with webhook_client(webhook) as client:
        for expected_count in (1, 2):
            result = await process_queue(client=client, now=clock)
            assert result.retried == 1
            stored = await load(row_id)
            assert stored.status == "pending"
            assert stored.retry_count == expected_count
            assert stored.response_status == 500
            assert stored.error_details == "HTTP 500: upstream down"
            retry_times.append(as_utc(stored.next_retry_at))

            # Not due yet: a pass just before the retry time claims nothing.
            early = await process_queue(client=client, now=retry_times[-1] - timedelta(seconds=1))
            assert early.processed == 0
            clock = retry_times[-1]

        final = await process_queue(client=client, now=clock)

    assert retry_times[0] == BASE_NOW + timedelta(seconds=60)
    assert retry_times[1] == retry_times[0] + timedelta(seconds=300)
    assert final.failed == 1
    stored = await load(row_id)
    assert stored.status == "failed"
    assert stored.retry_count == 3
    assert stored.next_retry_at is None
    assert len(webhook.requests) == 3


@pytest.mark.asyncio
async def test_client_errors_are_retried_like_server_errors() -> None:
    row_id = await add_notification()
    webhook = RecordingWebhook(404, body="no such channel")

    async with webhook_client(webhook) as client:
        result = await process_queue(client=client, now=BASE_NOW)

    assert result.retried == 1
    stored = await load(row_id)
    assert stored.status == "pending"
    assert stored.error_details == "HTTP 404: no such channel"


@pytest.mark.asyncio
async def test_transport_failures_record_error_without_status() -> None:
    refused_id = await add_notification(notification_id="n-refused", webhook_url="https://refused.test/hook")
    slow_id = await add_notification(notification_id="n-slow", webhook_url="https://slow.test/hook")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "refused.test":
            raise httpx.ConnectError("connection refused", request=request)
        raise httpx.ReadTimeout("timed out", request=request)

    async with webhook_client(handler) as client:
        result = await process_queue(client=client, now=BASE_NOW)

    assert result.retried == 2
    refused = await load(refused_id)
    slow = await load(slow_id)
    assert refused.status == "pending"
    assert refused.retry_count == 1
    assert refused.response_status is None
    assert refused.error_details == "ConnectError: connection refused"
    assert slow.error_details == "ReadTimeout: timed out"
    assert as_utc(slow.next_retry_at) == BASE_NOW + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_zero_max_retries_fails_after_one_attempt() -> None:
    row_id = await add_notification(max_retries=0)

    async with webhook_client(RecordingWebhook(503)) as client:
        result = await process_queue(client=client, now=BASE_NOW)

    assert result.failed == 1
    stored = await load(row_id)
    assert stored.status == "failed"
    assert stored.retry_count == 0


@pytest.mark.asyncio
async def test_long_response_bodies_are_truncated(monkeypatch) -> None:
    monkeypatch.setenv("QUEUE_RESPONSE_BODY_MAX_CHARS", "16")
    get_settings.cache_clear()
    row_id = await add_notification()

    async with webhook_client(RecordingWebhook(200, body="a" * 4000)) as client:
        await process_queue(client=client, now=BASE_NOW)

    stored = await load(row_id)
    assert stored.status == "completed"
    assert stored.response_body == "a" * 16


@pytest.mark.asyncio
async def test_one_broken_write_does_not_abort_the_batch(monkeypatch) -> None:
    good_id = await add_notification(notification_id="n-good")
    broken_id = await add_notification(notification_id="n-broken")
    original_apply = delivery_module.apply_outcome

    async def flaky_apply(session, notification_id, outcome, *, now=None, claimed_at=None):  # noqa: ANN001
        if notification_id == broken_id:
            raise RuntimeError("disk full")
        await original_apply(session, notification_id, outcome, now=now, claimed_at=claimed_at)

    monkeypatch.setattr(delivery_module, "apply_outcome", flaky_apply)

    async with webhook_client(RecordingWebhook(200)) as client:
        result = await process_queue(client=client, now=BASE_NOW)

    assert result.processed == 2
    assert result.succeeded == 1
    assert result.errors == 1
    assert (await load(good_id)).status == "completed"
    # Left for the stuck-row sweep to requeue.
    assert (await load(broken_id)).status == "processing"


@pytest.mark.asyncio
async def test_outcome_is_discarded_when_row_left_processing_mid_flight() -> None:
    row_id = await add_notification()

    async def handler(request: httpx.Request) -> httpx.Response:
        # An operator deletes the row while the POST is in flight.
        async with SessionLocal() as session:
            await queue_module.delete_queued_notification(session, row_id)
        return httpx.Response(200, text="ok")

    async with webhook_client(handler) as client:
        result = await process_queue(client=client, now=BASE_NOW)

    assert result.errors == 1
    assert await load(row_id) is None
    assert counters_snapshot()["queue.outcomes_discarded"] == 1


@pytest.mark.asyncio
async def test_slow_worker_outcome_is_discarded_after_row_is_reclaimed() -> None:
    row_id = await add_notification()
    requeued_at = BASE_NOW + timedelta(minutes=10)

    async with SessionLocal() as session:
        [stale] = await queue_repo.claim_eligible_pending(session, limit=1, now=BASE_NOW)
    async with SessionLocal() as session:
        assert await queue_repo.requeue_stale_processing(
            session, older_than=BASE_NOW + timedelta(minutes=5), now=requeued_at
        ) == 1
    async with SessionLocal() as session:
        [fresh] = await queue_repo.claim_eligible_pending(session, limit=1, now=requeued_at)

    async with webhook_client(RecordingWebhook(500, body="late failure")) as client:
        stale_kind = await deliver_notification(
            stale,
            client=client,
            policy=RetryPolicy(),
            session_factory=SessionLocal,
            now=requeued_at + timedelta(minutes=1),
        )

    assert stale_kind == "error"
    stored = await load(row_id)
    assert stored.status == "processing"
    assert stored.retry_count == 0
    assert stored.response_status is None
    assert as_utc(stored.last_attempt_at) == requeued_at
    assert counters_snapshot()["queue.outcomes_discarded"] == 1

    async with webhook_client(RecordingWebhook(200)) as client:
        fresh_kind = await deliver_notification(
            fresh,
            client=client,
            policy=RetryPolicy(),
            session_factory=SessionLocal,
            now=requeued_at + timedelta(minutes=1),
        )

    assert fresh_kind == "delivered"
    assert (await load(row_id)).status == "completed"


@pytest.mark.asyncio
async def test_disabled_kill_switch_skips_pass_without_http_calls() -> None:
    row_id = await add_notification()
    async with SessionLocal() as session:
        await set_queue_processing_enabled(session, False)
    webhook = RecordingWebhook(200)

    async with webhook_client(webhook) as client:
        result = await process_queue(client=client, now=BASE_NOW)

    assert result.skipped_reason == "disabled"
    assert result.processed == 0
    assert webhook.requests == []
    assert (await load(row_id)).status == "pending"


@pytest.mark.asyncio
async def test_higher_priority_rows_are_delivered_first() -> None:
    await add_notification(notification_id="low", priority=1, created_at=BASE_NOW - timedelta(minutes=5))
    await add_notification(notification_id="urgent", priority=10, created_at=BASE_NOW)
    await add_notification(notification_id="normal", priority=5, created_at=BASE_NOW - timedelta(minutes=1))
    webhook = RecordingWebhook(200)

    async with webhook_client(webhook) as client:
        await process_queue(client=client, now=BASE_NOW, concurrency=1)

    assert webhook.delivered_ids == ["urgent", "normal", "low"]


@pytest.mark.asyncio
async def test_pass_limit_caps_claimed_rows() -> None:
    for index in range(5):
        await add_notification(notification_id=f"n-{index}", created_at=BASE_NOW - timedelta(minutes=index))
    webhook = RecordingWebhook(200)

    async with webhook_client(webhook) as client:
        result = await process_queue(limit=2, client=client, now=BASE_NOW)

    assert result.processed == 2
    assert sorted(webhook.delivered_ids) == ["n-3", "n-4"]


@pytest.mark.asyncio
async def test_in_flight_deliveries_are_bounded_by_concurrency(monkeypatch) -> None:
    for index in range(6):
        await add_notification(notification_id=f"n-{index}")
    in_flight = 0
    peak = 0

    async def fake_deliver(row, **kwargs):  # noqa: ANN001
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return "delivered"

    monkeypatch.setattr(queue_module, "deliver_notification", fake_deliver)

    async with webhook_client(RecordingWebhook(200)) as client:
        result = await process_queue(client=client, now=BASE_NOW, concurrency=2)

    assert result.succeeded == 6
    assert peak == 2


@pytest.mark.asyncio
async def test_empty_queue_makes_no_requests() -> None:
    webhook = RecordingWebhook(200)

    async with webhook_client(webhook) as client:
        result = await process_queue(client=client, now=BASE_NOW)

    assert result.processed == 0
    assert result.skipped_reason is None
    assert webhook.requests == []
