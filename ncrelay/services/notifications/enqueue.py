from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ncrelay.core.config import get_settings
from ncrelay.core.errors import IntegrationUnavailable
from ncrelay.domain.models import Integration, QueuedNotification
from ncrelay.persistence.repos import notification_queue as queue_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntegrationTarget:
    integration_id: str
    tenant_id: str | None
    name: str
    platform: str
    webhook_url: str
    content_type: str
    enabled: bool
    max_retries: int | None


async def resolve_integration(session: AsyncSession, integration_id: str) -> IntegrationTarget | None:
    # Registry lookup: where and how to deliver for one integration.
    row = await session.get(Integration, integration_id)
    if row is None:
        return None
    return IntegrationTarget(
        integration_id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        platform=row.platform,
        webhook_url=row.webhook_url,
        content_type=row.content_type or "application/json",
        enabled=bool(row.enabled),
        max_retries=row.max_retries,
    )


async def enqueue_notification(
    session: AsyncSession,
    *,
    integration_id: str,
    payload: str,
    priority: int = 0,
    tenant_id: str | None = None,
    api_endpoint_id: str | None = None,
    api_endpoint_name: str | None = None,
    api_endpoint_path: str | None = None,
    original_request_id: str | None = None,
    max_retries: int | None = None,
    notification_id: str | None = None,
    now: datetime | None = None,
) -> QueuedNotification:
    """Queue one rendered payload for an integration.

    The integration's URL, content type and platform are copied onto the row
    so later registry edits do not change deliveries already queued.
    """
    target = await resolve_integration(session, integration_id)
    if target is None:
        raise IntegrationUnavailable(f"integration {integration_id} not found")
    if not target.enabled:
        raise IntegrationUnavailable(f"integration {integration_id} is disabled")
    if max_retries is None:
        max_retries = target.max_retries
    if max_retries is None:
        max_retries = get_settings().queue_default_max_retries
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")

    row = QueuedNotification(
        id=notification_id,
        tenant_id=tenant_id if tenant_id is not None else target.tenant_id,
        integration_id=target.integration_id,
        integration_name=target.name,
        platform=target.platform,
        webhook_url=target.webhook_url,
        content_type=target.content_type,
        payload=payload,
        priority=int(priority),
        max_retries=int(max_retries),
        api_endpoint_id=api_endpoint_id,
        api_endpoint_name=api_endpoint_name,
        api_endpoint_path=api_endpoint_path,
        original_request_id=original_request_id,
    )
    row = await queue_repo.insert_notification(session, row, now=now)
    logger.info(
        "queue_notification_enqueued notification_id=%s integration_id=%s platform=%s priority=%s",
        row.id,
        row.integration_id,
        row.platform,
        row.priority,
    )
    return row
