"""
Database models - import all models here so Alembic can discover them.
"""
from webhook_ingest.models.webhook_event import (
    WebhookEvent,
    WebhookEventSource,
    WebhookEventStatus,
)
from webhook_ingest.models.audit_log import AuditLog

__all__ = [
    "WebhookEvent",
    "WebhookEventSource",
    "WebhookEventStatus",
    "AuditLog",
]
