from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ncrelay.apps.api.deps import get_db, require_operator
from ncrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from ncrelay.apps.api.response import SuccessEnvelope, success_response
from ncrelay.domain.models import QueuedNotification
from ncrelay.persistence.repos import notification_queue as queue_repo
from ncrelay.services.notifications.health import queue_health
from ncrelay.services.notifications.kill_switch import (
    is_queue_processing_enabled,
    set_queue_processing_enabled,
)
from ncrelay.services.notifications.queue import (
    delete_queued_notification,
    get_queue_stats,
    get_queued_notification,
    pause_notification,
    process_queue,
    reconcile_stuck_notifications,
    retry_failed_notification,
    run_bulk_action,
)
from ncrelay.services.notifications.retention import cleanup_old_notifications


router = APIRouter(
    prefix="/admin/queue",
    tags=["queue"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_operator)],
)

QueueStatus = Literal["pending", "processing", "completed", "failed"]


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str | None
    integration_id: str
    integration_name: str | None
    platform: str
    webhook_url: str
    content_type: str
    payload: str
    priority: int
    status: str
    retry_count: int
    max_retries: int
    next_retry_at: datetime | None
    last_attempt_at: datetime | None
    response_status: int | None
    response_body: str | None
    error_details: str | None
    api_endpoint_id: str | None
    api_endpoint_name: str | None
    api_endpoint_path: str | None
    original_request_id: str | None
    created_at: datetime
    updated_at: datetime


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    count: int


class QueueStatsResponse(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    total: int


class QueueHealthResponse(BaseModel):
    status: str
    processing_enabled: bool
    counts: dict[str, int]
    stuck_processing: int
    oldest_due_pending_age_s: int | None
    worker_heartbeat_age_s: int | None
    job_queue_depth: int | None = None
    reasons: list[str]
    telemetry: dict


class ProcessRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=500)


class ProcessResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    retried: int
    errors: int
    skipped_reason: str | None = None


class BulkRequest(BaseModel):
    action: Literal["retry", "delete", "cancel"]
    ids: list[str] = Field(min_length=1)


class BulkResponse(BaseModel):
    action: str
    successful: int
    failed: int
    errors: list[str]
    message: str


class CleanupRequest(BaseModel):
    max_age_days: int | None = Field(default=None, ge=0)


class CleanupResponse(BaseModel):
    deleted: int
    max_age_days: int | None


class ReconcileRequest(BaseModel):
    timeout_s: int | None = Field(default=None, ge=0)


class ReconcileResponse(BaseModel):
    requeued: int


class DeleteResponse(BaseModel):
    id: str
    deleted: bool


class PauseResponse(BaseModel):
    id: str
    next_retry_at: datetime


class ProcessingSwitch(BaseModel):
    enabled: bool


def _serialize(row: QueuedNotification) -> dict:
    return NotificationResponse.model_validate(row).model_dump(mode="json")


@router.get("/stats", response_model=SuccessEnvelope[QueueStatsResponse])
async def queue_stats(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    counts = await get_queue_stats(db)
    return success_response(request=request, data=QueueStatsResponse(**counts))


@router.get("/health", response_model=SuccessEnvelope[QueueHealthResponse])
async def queue_health_status(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Report degraded rather than failing so monitors can alert on the status field.
    health = await queue_health(db)
    return success_response(request=request, data=health.as_dict())


@router.get("/notifications", response_model=SuccessEnvelope[NotificationListResponse])
async def list_notifications(
    request: Request,
    status_filter: QueueStatus | None = Query(default=None, alias="status"),
    request_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if request_id:
        rows = await queue_repo.list_for_request(db, request_id)
    elif status_filter:
        rows = await queue_repo.list_by_status(db, status_filter, limit=limit)
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "status or request_id query parameter is required"},
        )
    items = [_serialize(row) for row in rows]
    return success_response(request=request, data={"items": items, "count": len(items)})


@router.get("/notifications/{notification_id}", response_model=SuccessEnvelope[NotificationResponse])
async def get_notification(notification_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    row = await get_queued_notification(db, notification_id)
    return success_response(request=request, data=_serialize(row))


@router.delete("/notifications/{notification_id}", response_model=SuccessEnvelope[DeleteResponse])
async def delete_notification(notification_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    await delete_queued_notification(db, notification_id)
    return success_response(request=request, data={"id": notification_id, "deleted": True})


@router.post("/notifications/{notification_id}/retry", response_model=SuccessEnvelope[NotificationResponse])
async def retry_notification(notification_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    await retry_failed_notification(db, notification_id)
    row = await get_queued_notification(db, notification_id)
    return success_response(request=request, data=_serialize(row))


@router.post("/notifications/{notification_id}/pause", response_model=SuccessEnvelope[PauseResponse])
async def pause(notification_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    resume_at = await pause_notification(db, notification_id)
    return success_response(request=request, data=PauseResponse(id=notification_id, next_retry_at=resume_at))


@router.post("/process", response_model=SuccessEnvelope[ProcessResponse])
async def process_now(request: Request, body: ProcessRequest | None = None) -> dict:
    # Manual passes share the claim path with the scheduler and honor the kill switch.
    limit = body.limit if body is not None else None
    result = await process_queue(limit=limit, trigger="manual")
    return success_response(request=request, data=result.as_dict())


@router.post("/bulk", response_model=SuccessEnvelope[BulkResponse])
async def bulk_action(body: BulkRequest, request: Request) -> dict:
    result = await run_bulk_action(body.action, body.ids)
    return success_response(request=request, data=result.as_dict())


@router.post("/cleanup", response_model=SuccessEnvelope[CleanupResponse])
async def cleanup(
    request: Request,
    body: CleanupRequest | None = None,
    x_cleanup_age_days: int | None = Header(default=None, ge=0),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Body wins over the legacy header; neither means the configured retention window.
    max_age_days = body.max_age_days if body is not None and body.max_age_days is not None else x_cleanup_age_days
    deleted = await cleanup_old_notifications(db, max_age_days=max_age_days)
    return success_response(request=request, data={"deleted": deleted, "max_age_days": max_age_days})


@router.post("/reconcile", response_model=SuccessEnvelope[ReconcileResponse])
async def reconcile(
    request: Request,
    body: ReconcileRequest | None = None,
    db: AsyncSession = Depends(get_db),
) -> dict:
    timeout_s = body.timeout_s if body is not None else None
    requeued = await reconcile_stuck_notifications(db, timeout_s=timeout_s)
    return success_response(request=request, data={"requeued": requeued})


@router.get("/processing", response_model=SuccessEnvelope[ProcessingSwitch])
async def get_processing_switch(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    enabled = await is_queue_processing_enabled(db)
    return success_response(request=request, data={"enabled": enabled})


@router.put("/processing", response_model=SuccessEnvelope[ProcessingSwitch])
async def set_processing_switch(
    body: ProcessingSwitch,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    enabled = await set_queue_processing_enabled(db, body.enabled)
    return success_response(request=request, data={"enabled": enabled})
