from __future__ import annotations

from datetime import timedelta

import pytest

from ncrelay.core.config import get_settings
from ncrelay.core.errors import NotificationNotFound, StoreError
from ncrelay.domain.models import QueuedNotification
from ncrelay.persistence.db import SessionLocal
from ncrelay.persistence.repos import notification_queue as queue_repo
from ncrelay.tests.utils.notifications import BASE_NOW, WEBHOOK_URL, add_notification, load


def _new_row(row_id: str, **overrides) -> QueuedNotification:
    values = {
        "id": row_id,
        "integration_id": "int-slack",
        "platform": "slack",
        "webhook_url": WEBHOOK_URL,
        "content_type": "application/json",
        "payload": '{"text": "hello"}',
    }
    values.update(overrides)
    return QueuedNotification(**values)


@pytest.mark.asyncio
async def test_insert_always_starts_pending_with_no_attempts() -> None:
    async with SessionLocal() as session:
        row = _new_row("n-insert", status="failed", retry_count=2)
        await queue_repo.insert_notification(session, row, now=BASE_NOW)

    stored = await load("n-insert")
    assert stored is not None
    assert stored.status == "pending"
    assert stored.retry_count == 0
    assert stored.max_retries == 3
    assert stored.priority == 0
    assert queue_repo.as_utc(stored.created_at) == BASE_NOW
    assert queue_repo.as_utc(stored.updated_at) == BASE_NOW


@pytest.mark.asyncio
async def test_insert_generates_id_and_rejects_duplicates() -> None:
    async with SessionLocal() as session:
        row = await queue_repo.insert_notification(session, _new_row(None), now=BASE_NOW)
    assert row.id

    async with SessionLocal() as session:
        await queue_repo.insert_notification(session, _new_row("n-dup"), now=BASE_NOW)
    async with SessionLocal() as session:
        with pytest.raises(StoreError):
            await queue_repo.insert_notification(session, _new_row("n-dup"), now=BASE_NOW)


@pytest.mark.asyncio
async def test_get_returns_none_and_require_raises_for_unknown_id() -> None:
    async with SessionLocal() as session:
        assert await queue_repo.get_notification(session, "missing") is None
        with pytest.raises(NotificationNotFound) as exc_info:
            await queue_repo.require_notification(session, "missing")
    assert exc_info.value.notification_id == "missing"


@pytest.mark.asyncio
async def test_list_by_status_orders_by_priority_then_age_and_honors_limit() -> None:
    await add_notification(notification_id="old-low", priority=0, created_at=BASE_NOW - timedelta(hours=2))
    await add_notification(notification_id="new-high", priority=5, created_at=BASE_NOW)
    await add_notification(notification_id="old-high", priority=5, created_at=BASE_NOW - timedelta(hours=1))
    await add_notification(notification_id="done", status="completed")

    async with SessionLocal() as session:
        rows = await queue_repo.list_by_status(session, "pending")
        limited = await queue_repo.list_by_status(session, "pending", limit=2)
        with pytest.raises(ValueError):
            await queue_repo.list_by_status(session, "archived")

    assert [row.id for row in rows] == ["old-high", "new-high", "old-low"]
    assert [row.id for row in limited] == ["old-high", "new-high"]


@pytest.mark.asyncio
async def test_list_by_status_due_only_hides_deferred_rows() -> None:
    await add_notification(notification_id="due")
    await add_notification(notification_id="deferred", next_retry_at=BASE_NOW + timedelta(minutes=5))

    async with SessionLocal() as session:
        everything = await queue_repo.list_by_status(session, "pending", now=BASE_NOW)
        due = await queue_repo.list_by_status(session, "pending", due_only=True, now=BASE_NOW)

    assert {row.id for row in everything} == {"due", "deferred"}
    assert [row.id for row in due] == ["due"]


@pytest.mark.asyncio
async def test_claim_moves_only_due_pending_rows_to_processing() -> None:
    await add_notification(notification_id="due-low", priority=0)
    await add_notification(notification_id="due-high", priority=9)
    await add_notification(notification_id="boundary", next_retry_at=BASE_NOW)
    await add_notification(notification_id="later", next_retry_at=BASE_NOW + timedelta(seconds=1))
    await add_notification(notification_id="failed", status="failed", retry_count=3)
    await add_notification(notification_id="busy", status="processing", last_attempt_at=BASE_NOW)

    async with SessionLocal() as session:
        claimed = await queue_repo.claim_eligible_pending(session, limit=10, now=BASE_NOW)

    assert [row.id for row in claimed][0] == "due-high"
    assert {row.id for row in claimed} == {"due-low", "due-high", "boundary"}
    assert all(row.status == "processing" for row in claimed)
    for row_id in ("due-low", "due-high", "boundary"):
        stored = await load(row_id)
        assert stored.status == "processing"
        assert queue_repo.as_utc(stored.last_attempt_at) == BASE_NOW
    assert (await load("later")).status == "pending"
    assert (await load("failed")).status == "failed"


@pytest.mark.asyncio
async def test_claim_respects_limit_and_returns_empty_when_nothing_is_due() -> None:
    for index in range(4):
        await add_notification(notification_id=f"n-{index}", created_at=BASE_NOW - timedelta(minutes=10 - index))

    async with SessionLocal() as session:
        first = await queue_repo.claim_eligible_pending(session, limit=3, now=BASE_NOW)
        second = await queue_repo.claim_eligible_pending(session, limit=3, now=BASE_NOW)
        third = await queue_repo.claim_eligible_pending(session, limit=3, now=BASE_NOW)

    assert [row.id for row in first] == ["n-0", "n-1", "n-2"]
    assert [row.id for row in second] == ["n-3"]
    assert third == []


@pytest.mark.asyncio
async def test_interleaved_claimers_never_receive_the_same_row() -> None:
    for index in range(3):
        await add_notification(notification_id=f"race-{index}")

    async with SessionLocal() as slow, SessionLocal() as fast:
        # The slow claimer picks candidates, then loses every one of them to the fast claimer.
        candidates = await queue_repo.select_claim_candidates(slow, limit=10, now=BASE_NOW)
        fast_rows = await queue_repo.claim_eligible_pending(fast, limit=10, now=BASE_NOW)
        slow_ids = await queue_repo.claim_candidates(slow, candidates, now=BASE_NOW)
        await slow.commit()

    assert sorted(candidates) == ["race-0", "race-1", "race-2"]
    assert sorted(row.id for row in fast_rows) == ["race-0", "race-1", "race-2"]
    assert slow_ids == []


@pytest.mark.asyncio
async def test_update_merges_fields_and_reports_missing_rows() -> None:
    await add_notification(notification_id="n-upd", status="processing")
    later = BASE_NOW + timedelta(minutes=3)

    async with SessionLocal() as session:
        await queue_repo.update_notification(
            session,
            "n-upd",
            now=later,
            status="completed",
            response_status=204,
        )
        with pytest.raises(NotificationNotFound):
            await queue_repo.update_notification(session, "missing", status="failed")
        with pytest.raises(NotificationNotFound):
            await queue_repo.update_notification(
                session,
                "n-upd",
                expected_status="processing",
                status="pending",
            )
        with pytest.raises(ValueError):
            await queue_repo.update_notification(session, "n-upd", webhook_url="https://elsewhere.test")
        with pytest.raises(ValueError):
            await queue_repo.update_notification(session, "n-upd", status="archived")

    stored = await load("n-upd")
    assert stored.status == "completed"
    assert stored.response_status == 204
    assert stored.payload == '{"text": "deploy finished"}'
    assert queue_repo.as_utc(stored.updated_at) == later


@pytest.mark.asyncio
async def test_update_guarded_by_claim_time_rejects_other_claims() -> None:
    claimed_at = BASE_NOW - timedelta(minutes=1)
    await add_notification(notification_id="n-claim", status="processing", last_attempt_at=claimed_at)

    async with SessionLocal() as session:
        with pytest.raises(NotificationNotFound):
            await queue_repo.update_notification(
                session,
                "n-claim",
                expected_status="processing",
                expected_last_attempt_at=BASE_NOW,
                status="completed",
            )
        await queue_repo.update_notification(
            session,
            "n-claim",
            expected_status=("processing",),
            expected_last_attempt_at=claimed_at,
            status="completed",
        )

    assert (await load("n-claim")).status == "completed"


@pytest.mark.asyncio
async def test_update_truncates_response_body_and_error_details(monkeypatch) -> None:
    monkeypatch.setenv("QUEUE_RESPONSE_BODY_MAX_CHARS", "8")
    monkeypatch.setenv("QUEUE_ERROR_DETAILS_MAX_CHARS", "5")
    get_settings.cache_clear()
    await add_notification(notification_id="n-long")

    async with SessionLocal() as session:
        await queue_repo.update_notification(
            session,
            "n-long",
            response_body="x" * 50,
            error_details="HTTP 500: upstream exploded",
        )

    stored = await load("n-long")
    assert stored.response_body == "x" * 8
    assert stored.error_details == "HTTP "


@pytest.mark.asyncio
async def test_delete_is_idempotent() -> None:
    await add_notification(notification_id="n-del")

    async with SessionLocal() as session:
        assert await queue_repo.delete_notification(session, "n-del") is True
        assert await queue_repo.delete_notification(session, "n-del") is False

    assert await load("n-del") is None


@pytest.mark.asyncio
async def test_count_by_status_reports_every_status() -> None:
    await add_notification(status="pending")
    await add_notification(status="pending")
    await add_notification(status="failed", retry_count=3)

    async with SessionLocal() as session:
        counts = await queue_repo.count_by_status(session)

    assert counts == {"pending": 2, "processing": 0, "completed": 0, "failed": 1, "total": 3}


@pytest.mark.asyncio
async def test_list_for_request_returns_fanout_in_creation_order() -> None:
    await add_notification(notification_id="fan-b", original_request_id="req-1", created_at=BASE_NOW)
    await add_notification(
        notification_id="fan-a",
        original_request_id="req-1",
        created_at=BASE_NOW - timedelta(seconds=5),
    )
    await add_notification(notification_id="other", original_request_id="req-2")

    async with SessionLocal() as session:
        rows = await queue_repo.list_for_request(session, "req-1")

    assert [row.id for row in rows] == ["fan-a", "fan-b"]
