"""create notification queue, system settings and integration registry tables

Revision ID: 0001_notification_queue
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_notification_queue"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Registry of delivery targets resolved at enqueue time.
    op.create_table(
        "integrations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("webhook_url", sa.Text(), nullable=False),
        sa.Column("content_type", sa.String(), nullable=False, server_default="application/json"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("max_retries", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_integrations_tenant_id", "integrations", ["tenant_id"])

    # Durable delivery queue; one row per outbound webhook notification.
    op.create_table(
        "notification_queue",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("integration_id", sa.String(), nullable=False),
        sa.Column("integration_name", sa.String(), nullable=True),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("webhook_url", sa.Text(), nullable=False),
        sa.Column("content_type", sa.String(), nullable=False, server_default="application/json"),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("error_details", sa.Text(), nullable=True),
        sa.Column("api_endpoint_id", sa.String(), nullable=True),
        sa.Column("api_endpoint_name", sa.String(), nullable=True),
        sa.Column("api_endpoint_path", sa.String(), nullable=True),
        sa.Column("original_request_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_notification_queue_status",
        ),
        sa.CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries",
            name="ck_notification_queue_retry_bounds",
        ),
    )
    # Claim and cleanup both filter on status first.
    op.create_index(
        "ix_notification_queue_status_next_retry",
        "notification_queue",
        ["status", "next_retry_at"],
    )
    op.create_index("ix_notification_queue_tenant_id", "notification_queue", ["tenant_id"])
    op.create_index("ix_notification_queue_integration_id", "notification_queue", ["integration_id"])
    op.create_index("ix_notification_queue_original_request_id", "notification_queue", ["original_request_id"])

    # Key/value switches shared by API and worker processes.
    op.create_table(
        "system_settings",
        sa.Column("key", sa.String(), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("system_settings")
    op.drop_index("ix_notification_queue_original_request_id", table_name="notification_queue")
    op.drop_index("ix_notification_queue_integration_id", table_name="notification_queue")
    op.drop_index("ix_notification_queue_tenant_id", table_name="notification_queue")
    op.drop_index("ix_notification_queue_status_next_retry", table_name="notification_queue")
    op.drop_table("notification_queue")
    op.drop_index("ix_integrations_tenant_id", table_name="integrations")
    op.drop_table("integrations")
