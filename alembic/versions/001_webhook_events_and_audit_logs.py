"""Add webhook_events and audit_logs tables for idempotent ingestion and retry tracking

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Every verified Stripe delivery, recorded before dispatch
    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider_event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("provider_account_id", sa.String(255), nullable=True),
        sa.Column("api_version", sa.String(50), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("raw_payload", sa.Text, nullable=False),
        sa.Column("event_payload", postgresql.JSONB, nullable=False),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("backoff_multiplier", sa.Float, nullable=False, server_default="2"),
        sa.Column("processing_duration_ms", sa.Integer, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column(
            "duplicate_of_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("webhook_events.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("metadata", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("tags", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    # Idempotency key - duplicate shadow rows are excluded
    op.create_index(
        "uq_webhook_events_provider_event_id", "webhook_events", ["provider_event_id"],
        unique=True, postgresql_where=sa.text("duplicate_of_id IS NULL"),
    )
    op.create_index(
        "ix_webhook_events_status_next_retry_at", "webhook_events", ["status", "next_retry_at"],
    )
    op.create_index("ix_webhook_events_received_at", "webhook_events", ["received_at"])
    op.create_index(
        "ix_webhook_events_event_type_received_at", "webhook_events", ["event_type", "received_at"],
    )
    op.create_index(
        "ix_webhook_events_source_received_at", "webhook_events", ["source", "received_at"],
    )
    op.create_index(
        "ix_webhook_events_provider_account_id", "webhook_events", ["provider_account_id"],
    )
    op.create_index("ix_webhook_events_duplicate_of_id", "webhook_events", ["duplicate_of_id"])

    # Append-only lifecycle trail
    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "webhook_event_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("webhook_events.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("provider_event_id", sa.String(255), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("category", sa.String(30), nullable=True, server_default="webhook"),
        sa.Column("level", sa.String(20), nullable=True, server_default="info"),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column("data", postgresql.JSONB, nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_webhook_event_id", "audit_logs", ["webhook_event_id"])
    op.create_index("ix_audit_logs_provider_event_id", "audit_logs", ["provider_event_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_created_at", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_provider_event_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_webhook_event_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_webhook_events_duplicate_of_id", table_name="webhook_events")
    op.drop_index("ix_webhook_events_provider_account_id", table_name="webhook_events")
    op.drop_index("ix_webhook_events_source_received_at", table_name="webhook_events")
    op.drop_index("ix_webhook_events_event_type_received_at", table_name="webhook_events")
    op.drop_index("ix_webhook_events_received_at", table_name="webhook_events")
    op.drop_index("ix_webhook_events_status_next_retry_at", table_name="webhook_events")
    op.drop_index("uq_webhook_events_provider_event_id", table_name="webhook_events")
    op.drop_table("webhook_events")
