"""
Audit sink - one append-only entry per webhook lifecycle transition.

Each entry is written in its own short transaction, never batched, so the
trail stays transition-complete even if the process dies between entries.
A failed audit write is logged and does not interrupt ingestion or dispatch.
"""
import enum
import logging
from typing import Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_ingest.models.audit_log import AuditLog
from webhook_ingest.models.webhook_event import WebhookEvent
from webhook_ingest.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)


class AuditAction(str, enum.Enum):
    WEBHOOK_RECEIVED = "webhook_received"
    WEBHOOK_DUPLICATE = "webhook_duplicate"
    WEBHOOK_PROCESSED = "webhook_processed"
    WEBHOOK_FAILED = "webhook_failed"
    WEBHOOK_RETRY_SCHEDULED = "webhook_retry_scheduled"
    WEBHOOK_RETRIES_EXHAUSTED = "webhook_retries_exhausted"


class AuditLevel(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditSink(Protocol):
    async def record(
        self,
        action: AuditAction,
        level: AuditLevel,
        message: str,
        metadata: dict,
        event: Optional[WebhookEvent] = None,
    ) -> None:
        ...


class DatabaseAuditSink:
    """Writes audit entries to the audit_logs table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(
        self,
        action: AuditAction,
        level: AuditLevel,
        message: str,
        metadata: dict,
        event: Optional[WebhookEvent] = None,
    ) -> None:
        entry = AuditLog(
            action=AuditAction(action).value,
            category="webhook",
            level=AuditLevel(level).value,
            message=message,
            webhook_event_id=event.id if event is not None else None,
            provider_event_id=event.provider_event_id if event is not None else None,
            data=metadata,
            correlation_id=get_correlation_id(),
        )
        try:
            async with self._session_factory() as db:
                db.add(entry)
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to write audit entry %s: %s", entry.action, str(e),
                extra={"provider_event_id": entry.provider_event_id},
            )
