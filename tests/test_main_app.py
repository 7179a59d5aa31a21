"""
Tests for webhook_ingest/main.py, services/container.py and utils/logging.py.
"""
import asyncio
import json
import logging
from unittest.mock import AsyncMock, patch

from webhook_ingest.main import create_app, lifespan
from webhook_ingest.models.webhook_event import WebhookEventSource
from webhook_ingest.services.audit import DatabaseAuditSink
from webhook_ingest.services.container import build_services
from webhook_ingest.utils.logging import (
    StructuredJsonFormatter,
    generate_correlation_id,
    set_correlation_id,
)


class TestBuildServices:
    def test_wires_settings_into_services(self, settings, session_factory, registry):
        services = build_services(settings, session_factory, registry=registry)
        assert services.registry is registry
        assert isinstance(services.audit, DatabaseAuditSink)
        assert services.policy.jitter_enabled is False
        assert services.ingest.channel_secrets[WebhookEventSource.MAIN] == "whsec_main_test"
        assert services.ingest.channel_secrets[WebhookEventSource.CONNECT] == "whsec_connect_test"
        assert services.scheduler.lease_seconds == settings.retry_claim_lease_seconds
        assert services.dispatcher.store is services.store

    def test_loads_handler_modules_from_settings(self, settings, session_factory, tmp_path, monkeypatch):
        (tmp_path / "billing_handlers_test.py").write_text(
            "def register_handlers(registry):\n"
            "    registry.register('invoice.paid', lambda event: None)\n"
        )
        monkeypatch.syspath_prepend(str(tmp_path))
        settings = settings.model_copy(update={"webhook_handler_modules": "billing_handlers_test"})
        services = build_services(settings, session_factory)
        assert services.registry.is_registered("invoice.paid")


class TestLifespan:
    async def test_starts_and_stops_retry_worker(self, settings, session_factory, registry):
        settings = settings.model_copy(update={"retry_worker_enabled": True, "retry_poll_interval_seconds": 5})
        services = build_services(settings, session_factory, registry=registry)
        app = create_app(services=services)

        with patch("webhook_ingest.main.run_retry_worker", new_callable=AsyncMock) as worker:
            async with lifespan(app):
                await asyncio.sleep(0)
        worker.assert_awaited_once_with(services.scheduler, 5)

    async def test_worker_disabled(self, settings, session_factory, registry):
        services = build_services(settings, session_factory, registry=registry)
        app = create_app(services=services)
        with patch("webhook_ingest.main.run_retry_worker", new_callable=AsyncMock) as worker:
            async with lifespan(app):
                assert app.state.services is services
        worker.assert_not_called()

    async def test_shutdown_drains_dispatches(self, settings, session_factory, registry):
        services = build_services(settings, session_factory, registry=registry)
        app = create_app(services=services)
        with patch.object(services.ingest, "drain", new_callable=AsyncMock, return_value=0) as drain:
            async with lifespan(app):
                pass
        drain.assert_awaited_once()


class TestStructuredLogging:
    def test_json_line_with_webhook_fields(self):
        set_correlation_id("cid-1")
        record = logging.LogRecord("webhook_ingest.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.provider_event_id = "evt_1"
        record.retry_count = 2
        entry = json.loads(StructuredJsonFormatter().format(record))
        assert entry["message"] == "hello world"
        assert entry["level"] == "INFO"
        assert entry["correlation_id"] == "cid-1"
        assert entry["provider_event_id"] == "evt_1"
        assert entry["retry_count"] == 2
        assert "source" not in entry

    def test_generated_correlation_ids_are_unique(self):
        assert generate_correlation_id() != generate_correlation_id()
        assert len(generate_correlation_id()) == 32
