from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ncrelay.core.config import get_settings
from ncrelay.persistence.db import pool_stats
from ncrelay.persistence.repos import notification_queue as queue_repo
from ncrelay.services.notifications import coordination
from ncrelay.services.notifications.kill_switch import is_queue_processing_enabled
from ncrelay.services.telemetry import counters_snapshot, delivery_latency_by_platform, queue_pass_stats


HEALTH_HEALTHY = "healthy"
HEALTH_DEGRADED = "degraded"
_TELEMETRY_WINDOW_S = 3600


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueueHealth:
    status: str
    processing_enabled: bool
    counts: dict[str, int]
    stuck_processing: int
    oldest_due_pending_age_s: int | None
    worker_heartbeat_age_s: int | None
    job_queue_depth: int | None = None
    reasons: list[str] = field(default_factory=list)
    telemetry: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


async def queue_health(session: AsyncSession, *, now: datetime | None = None) -> QueueHealth:
    """Summarize queue state and flag it degraded when backlog or failures pile up.

    Degraded means any of: pending above its threshold, failed above its
    threshold, rows stuck in processing past the processing timeout, or a
    stale worker heartbeat. A disabled kill switch is reported but does not
    degrade on its own.
    """
    settings = get_settings()
    timestamp = now or _utc_now()
    counts = await queue_repo.count_by_status(session)
    stale_before = timestamp - timedelta(seconds=max(0, int(settings.queue_processing_timeout_s)))
    stuck = await queue_repo.count_stale_processing(session, older_than=stale_before)
    oldest_due = await queue_repo.oldest_due_pending_created_at(session, now=timestamp)
    enabled = await is_queue_processing_enabled(session)
    heartbeat = await coordination.get_worker_heartbeat()
    job_queue_depth = await coordination.get_job_queue_depth()

    reasons: list[str] = []
    if counts["pending"] > settings.queue_health_pending_threshold:
        reasons.append(f"pending count {counts['pending']} exceeds {settings.queue_health_pending_threshold}")
    if counts["failed"] > settings.queue_health_failed_threshold:
        reasons.append(f"failed count {counts['failed']} exceeds {settings.queue_health_failed_threshold}")
    if stuck:
        reasons.append(f"{stuck} notification(s) stuck in processing")
    heartbeat_age_s = None
    if heartbeat is not None:
        heartbeat_age_s = max(0, int((timestamp - queue_repo.as_utc(heartbeat)).total_seconds()))
        # A missing heartbeat means no Redis; only a present but old one is a scheduler outage.
        if heartbeat_age_s > settings.worker_heartbeat_stale_after_s:
            reasons.append(f"worker heartbeat stale for {heartbeat_age_s}s")

    return QueueHealth(
        status=HEALTH_DEGRADED if reasons else HEALTH_HEALTHY,
        processing_enabled=enabled,
        counts=counts,
        stuck_processing=stuck,
        oldest_due_pending_age_s=(
            max(0, int((timestamp - oldest_due).total_seconds())) if oldest_due is not None else None
        ),
        worker_heartbeat_age_s=heartbeat_age_s,
        job_queue_depth=job_queue_depth,
        reasons=reasons,
        telemetry={
            "counters": counters_snapshot(),
            "deliveries": delivery_latency_by_platform(_TELEMETRY_WINDOW_S),
            "passes": queue_pass_stats(_TELEMETRY_WINDOW_S),
            "db_pool": pool_stats(),
        },
    )
