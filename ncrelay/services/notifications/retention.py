from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ncrelay.core.config import get_settings
from ncrelay.persistence.repos import notification_queue as queue_repo
from ncrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def retention_cutoff(*, max_age_days: int, now: datetime) -> datetime:
    if max_age_days < 0:
        raise ValueError("max_age_days must be >= 0")
    return now - timedelta(days=int(max_age_days))


async def cleanup_old_notifications(
    session: AsyncSession,
    *,
    max_age_days: int | None = None,
    now: datetime | None = None,
) -> int:
    # Purge completed/failed rows last touched at or before the cutoff; live rows are never removed.
    days = int(max_age_days if max_age_days is not None else get_settings().queue_retention_days)
    cutoff = retention_cutoff(max_age_days=days, now=now or _utc_now())
    deleted = await queue_repo.delete_terminal_before(session, cutoff=cutoff)
    increment_counter("queue.cleaned_up", deleted)
    logger.info("queue_cleanup_completed deleted=%s max_age_days=%s cutoff=%s", deleted, days, cutoff.isoformat())
    return deleted
