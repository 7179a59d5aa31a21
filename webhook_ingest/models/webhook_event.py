"""
Webhook event record - every verified Stripe delivery is recorded before dispatch.
The row is the source of truth for idempotency (provider_event_id) and retry
state (status, retry_count, next_retry_at). Rows are never deleted here.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String, Text, Integer, Float, DateTime, ForeignKey, Index, text,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from webhook_ingest.database import Base


class WebhookEventStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class WebhookEventSource(str, enum.Enum):
    MAIN = "main"        # payments, charges, checkout sessions
    CONNECT = "connect"  # connected accounts, payouts, transfers


# Allowed status moves. DUPLICATE is only ever written on insert.
STATUS_TRANSITIONS = {
    WebhookEventStatus.PENDING: {WebhookEventStatus.PROCESSED, WebhookEventStatus.FAILED},
    WebhookEventStatus.FAILED: {WebhookEventStatus.PROCESSED, WebhookEventStatus.FAILED},
    WebhookEventStatus.PROCESSED: set(),
    WebhookEventStatus.DUPLICATE: set(),
}


def allowed_sources(target: WebhookEventStatus) -> list[str]:
    """Statuses a row may be in for a conditional write to move it to target."""
    return [
        current.value
        for current, targets in STATUS_TRANSITIONS.items()
        if target in targets
    ]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Stripe identity
    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    provider_account_id: Mapped[Optional[str]] = mapped_column(String(255))
    api_version: Mapped[Optional[str]] = mapped_column(String(50))

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WebhookEventStatus.PENDING.value,
        server_default=WebhookEventStatus.PENDING.value,
    )

    # Body exactly as received, plus the parsed document handed to handlers
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False)
    event_payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Lifecycle
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Retry state
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    max_retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, server_default="3"
    )
    backoff_multiplier: Mapped[float] = mapped_column(
        Float, nullable=False, default=2.0, server_default="2"
    )

    # Last handler run
    processing_duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    # Set only on DUPLICATE rows
    duplicate_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("webhook_events.id", ondelete="SET NULL")
    )

    # Free-form context: request info, processing info, affected user linkage
    event_metadata: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    tags: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    # Bumped by every write that merges into metadata; those writes are
    # check-and-set on the version they read
    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default="1"
    )

    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        # Idempotency key: one non-duplicate row per Stripe event id
        Index(
            "uq_webhook_events_provider_event_id",
            "provider_event_id",
            unique=True,
            postgresql_where=text("duplicate_of_id IS NULL"),
            sqlite_where=text("duplicate_of_id IS NULL"),
        ),
        Index("ix_webhook_events_status_next_retry_at", "status", "next_retry_at"),
        Index("ix_webhook_events_received_at", "received_at"),
        Index("ix_webhook_events_event_type_received_at", "event_type", "received_at"),
        Index("ix_webhook_events_source_received_at", "source", "received_at"),
        Index("ix_webhook_events_provider_account_id", "provider_account_id"),
        Index("ix_webhook_events_duplicate_of_id", "duplicate_of_id"),
    )

    @property
    def is_terminal(self) -> bool:
        if self.status in (WebhookEventStatus.PROCESSED.value, WebhookEventStatus.DUPLICATE.value):
            return True
        return self.status == WebhookEventStatus.FAILED.value and self.next_retry_at is None

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.provider_event_id} {self.event_type} status={self.status}>"
