from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Queue lifecycle states; completed and failed are terminal.
QUEUE_STATUS_PENDING = "pending"
QUEUE_STATUS_PROCESSING = "processing"
QUEUE_STATUS_COMPLETED = "completed"
QUEUE_STATUS_FAILED = "failed"
QUEUE_STATUSES = (
    QUEUE_STATUS_PENDING,
    QUEUE_STATUS_PROCESSING,
    QUEUE_STATUS_COMPLETED,
    QUEUE_STATUS_FAILED,
)
QUEUE_TERMINAL_STATUSES = (QUEUE_STATUS_COMPLETED, QUEUE_STATUS_FAILED)


class Base(DeclarativeBase):
    pass


class QueuedNotification(Base):
    __tablename__ = "notification_queue"
    __table_args__ = (
        # Serve the claim query (pending rows whose retry time elapsed) from one index.
        Index("ix_notification_queue_status_next_retry", "status", "next_retry_at"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_notification_queue_status",
        ),
        CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries",
            name="ck_notification_queue_retry_bounds",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    integration_id: Mapped[str] = mapped_column(String, index=True)
    # Denormalized so operators can read the queue without joining the registry.
    integration_name: Mapped[str | None] = mapped_column(String, nullable=True)
    platform: Mapped[str] = mapped_column(String)
    webhook_url: Mapped[str] = mapped_column(Text)
    content_type: Mapped[str] = mapped_column(String, default="application/json")
    # Rendered body POSTed verbatim.
    payload: Mapped[str] = mapped_column(Text)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String, default=QUEUE_STATUS_PENDING, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Trace a delivery back to the inbound endpoint and request that produced it.
    api_endpoint_id: Mapped[str | None] = mapped_column(String, nullable=True)
    api_endpoint_name: Mapped[str | None] = mapped_column(String, nullable=True)
    api_endpoint_path: Mapped[str | None] = mapped_column(String, nullable=True)
    original_request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SystemSetting(Base):
    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Integration(Base):
    __tablename__ = "integrations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String)
    platform: Mapped[str] = mapped_column(String)
    webhook_url: Mapped[str] = mapped_column(Text)
    content_type: Mapped[str] = mapped_column(String, default="application/json")
    # Disabled integrations keep their history but accept no new deliveries.
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Per-integration retry ceiling; null falls back to the configured default.
    max_retries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
