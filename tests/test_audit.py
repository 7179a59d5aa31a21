"""
Tests for webhook_ingest/services/audit.py - database audit sink.
"""
from unittest.mock import MagicMock

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from webhook_ingest.models.audit_log import AuditLog
from webhook_ingest.models.webhook_event import WebhookEventSource
from webhook_ingest.services.audit import AuditAction, AuditLevel, DatabaseAuditSink
from webhook_ingest.utils.logging import set_correlation_id


class TestDatabaseAuditSink:
    async def test_writes_one_row_per_call(self, session_factory, store, verified_event, request_context):
        outcome = await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        sink = DatabaseAuditSink(session_factory)
        set_correlation_id("cid-123")

        await sink.record(
            AuditAction.WEBHOOK_RECEIVED, AuditLevel.INFO, "Received payout.paid",
            {"source": "main"}, event=outcome.record,
        )
        await sink.record(
            AuditAction.WEBHOOK_PROCESSED, AuditLevel.INFO, "Processed",
            {"processing_time_ms": 3}, event=outcome.record,
        )

        async with session_factory() as db:
            rows = (await db.execute(select(AuditLog).order_by(AuditLog.created_at))).scalars().all()
        assert [r.action for r in rows] == ["webhook_received", "webhook_processed"]
        assert rows[0].webhook_event_id == outcome.record.id
        assert rows[0].provider_event_id == "evt_1"
        assert rows[0].category == "webhook"
        assert rows[0].level == "info"
        assert rows[0].data == {"source": "main"}
        assert rows[0].correlation_id == "cid-123"

    async def test_entry_without_event(self, session_factory):
        sink = DatabaseAuditSink(session_factory)
        await sink.record(AuditAction.WEBHOOK_FAILED, AuditLevel.ERROR, "boom", {})
        async with session_factory() as db:
            row = (await db.execute(select(AuditLog))).scalar_one()
        assert row.webhook_event_id is None
        assert row.level == "error"

    async def test_write_failure_is_swallowed(self):
        broken_factory = MagicMock(side_effect=OperationalError("INSERT", {}, Exception("db down")))
        sink = DatabaseAuditSink(broken_factory)
        # Must not raise
        await sink.record(AuditAction.WEBHOOK_RETRIES_EXHAUSTED, AuditLevel.CRITICAL, "gave up", {})
