"""
Audit log model - append-only trail of every webhook lifecycle transition.
Used for debugging, compliance audits, and replay forensics.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from webhook_ingest.database import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    webhook_event_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("webhook_events.id", ondelete="SET NULL")
    )
    provider_event_id: Mapped[Optional[str]] = mapped_column(String(255))

    # Entry details
    action: Mapped[str] = mapped_column(
        String(100), nullable=False
    )  # webhook_received, webhook_duplicate, webhook_processed, webhook_failed, ...
    category: Mapped[str] = mapped_column(String(30), default="webhook")
    level: Mapped[str] = mapped_column(
        String(20), default="info"
    )  # info, warning, error, critical
    message: Mapped[Optional[str]] = mapped_column(Text)

    # Context data
    data: Mapped[Optional[dict]] = mapped_column(JSONB)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_audit_logs_webhook_event_id", "webhook_event_id"),
        Index("ix_audit_logs_provider_event_id", "provider_event_id"),
        Index("ix_audit_logs_action", "action"),
        Index("ix_audit_logs_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} level={self.level}>"
