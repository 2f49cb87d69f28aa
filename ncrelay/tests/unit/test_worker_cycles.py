from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ncrelay.persistence.db import SessionLocal
from ncrelay.services.notifications import coordination
from ncrelay.services.notifications import queue as queue_module
from ncrelay.services.notifications.kill_switch import set_queue_processing_enabled
from ncrelay.services.notifications.worker import run_queue_cleanup_cycle, run_queue_processing_cycle
from ncrelay.tests.utils.notifications import BASE_NOW, RecordingWebhook, add_notification, load, webhook_client


class _FakeRedis:
    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):  # noqa: ANN001
        if nx and key in self._values:
            return False
        self._values[key] = str(value)
        return True

    async def get(self, key: str):  # noqa: ANN001
        value = self._values.get(key)
        return value.encode("utf-8") if value is not None else None

    async def delete(self, key: str) -> int:
        existed = key in self._values
        self._values.pop(key, None)
        return 1 if existed else 0


def _use_webhook(monkeypatch, webhook: RecordingWebhook) -> None:
    monkeypatch.setattr(queue_module, "build_delivery_client", lambda: webhook_client(webhook))


@pytest.mark.asyncio
async def test_processing_cycle_is_skipped_while_disabled(monkeypatch) -> None:
    webhook = RecordingWebhook(200)
    _use_webhook(monkeypatch, webhook)
    row_id = await add_notification()
    stuck_id = await add_notification(status="processing", last_attempt_at=BASE_NOW - timedelta(days=1))
    async with SessionLocal() as session:
        await set_queue_processing_enabled(session, False)

    summary = await run_queue_processing_cycle()

    assert summary["status"] == "disabled"
    assert summary["processed"] == 0
    assert webhook.requests == []
    assert (await load(row_id)).status == "pending"
    assert (await load(stuck_id)).status == "processing"


@pytest.mark.asyncio
async def test_processing_cycle_requeues_stuck_rows_then_delivers(monkeypatch) -> None:
    webhook = RecordingWebhook(200)
    _use_webhook(monkeypatch, webhook)
    row_id = await add_notification()
    stuck_id = await add_notification(status="processing", last_attempt_at=BASE_NOW - timedelta(days=1))

    summary = await run_queue_processing_cycle()

    assert summary == {"status": "ok", "requeued": 1, "processed": 2, "succeeded": 2, "failed": 0}
    assert sorted(webhook.delivered_ids) == sorted([row_id, stuck_id])
    assert (await load(row_id)).status == "completed"
    assert (await load(stuck_id)).status == "completed"


@pytest.mark.asyncio
async def test_processing_cycle_writes_worker_heartbeat(monkeypatch) -> None:
    redis = _FakeRedis()

    async def _redis():  # type: ignore[override]
        return redis

    monkeypatch.setattr(coordination, "_redis_or_none", _redis)
    _use_webhook(monkeypatch, RecordingWebhook(200))

    await run_queue_processing_cycle(limit=5)

    heartbeat = await coordination.get_worker_heartbeat()
    assert heartbeat is not None
    assert datetime.now(timezone.utc) - heartbeat < timedelta(minutes=1)


@pytest.mark.asyncio
async def test_cleanup_cycle_purges_old_terminal_rows() -> None:
    old_done = await add_notification(status="completed", updated_at=BASE_NOW - timedelta(days=400))
    live = await add_notification(status="pending", updated_at=BASE_NOW - timedelta(days=400))

    summary = await run_queue_cleanup_cycle(max_age_days=30)

    assert summary == {"status": "ok", "deleted": 1}
    assert await load(old_done) is None
    assert await load(live) is not None


@pytest.mark.asyncio
async def test_cleanup_cycle_skips_when_another_worker_holds_the_lock(monkeypatch) -> None:
    redis = _FakeRedis()

    async def _redis():  # type: ignore[override]
        return redis

    monkeypatch.setattr(coordination, "_redis_or_none", _redis)
    await add_notification(status="completed", updated_at=BASE_NOW - timedelta(days=400))

    held = await coordination.acquire_cleanup_lock()
    assert held is not None
    assert (await run_queue_cleanup_cycle(max_age_days=30)) == {"status": "skipped_lock", "deleted": 0}

    await coordination.release_cleanup_lock(held)
    assert (await run_queue_cleanup_cycle(max_age_days=30)) == {"status": "ok", "deleted": 1}


@pytest.mark.asyncio
async def test_local_cleanup_lock_has_a_single_owner() -> None:
    first = await coordination.acquire_cleanup_lock()
    second = await coordination.acquire_cleanup_lock()

    assert first is not None and first.local is True
    assert second is None

    await coordination.release_cleanup_lock(first)
    third = await coordination.acquire_cleanup_lock()
    assert third is not None
    await coordination.release_cleanup_lock(third)
