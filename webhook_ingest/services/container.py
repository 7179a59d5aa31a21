"""
Service wiring - builds the ingestion stack from settings.

Nothing here is a module-level singleton: the app lifespan (or a test) calls
build_services() once and hangs the result on app.state.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_ingest.config import Settings
from webhook_ingest.models.webhook_event import WebhookEventSource
from webhook_ingest.services.audit import AuditSink, DatabaseAuditSink
from webhook_ingest.services.dispatcher import WebhookDispatcher
from webhook_ingest.services.event_store import EventStore
from webhook_ingest.services.handler_registry import HandlerRegistry, load_handler_modules
from webhook_ingest.services.ingest import IngestCoordinator
from webhook_ingest.services.retry_policy import RetryPolicy
from webhook_ingest.workers.retry_worker import RetryScheduler

logger = logging.getLogger(__name__)


@dataclass
class WebhookServices:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    policy: RetryPolicy
    store: EventStore
    audit: AuditSink
    registry: HandlerRegistry
    dispatcher: WebhookDispatcher
    ingest: IngestCoordinator
    scheduler: RetryScheduler


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    registry: Optional[HandlerRegistry] = None,
    audit: Optional[AuditSink] = None,
) -> WebhookServices:
    """Construct the store, audit sink, dispatcher, coordinator and retry scheduler."""
    if registry is None:
        registry = HandlerRegistry()
        load_handler_modules(registry, settings.webhook_handler_modules)
    if audit is None:
        audit = DatabaseAuditSink(session_factory)

    for name, secret in (
        ("STRIPE_WEBHOOK_SECRET", settings.stripe_webhook_secret),
        ("STRIPE_CONNECT_WEBHOOK_SECRET", settings.stripe_connect_webhook_secret),
    ):
        if not secret:
            logger.warning("%s not set - deliveries on that channel will be rejected", name)

    policy = RetryPolicy.from_settings(settings)
    store = EventStore(session_factory, policy)
    dispatcher = WebhookDispatcher(
        store,
        registry,
        audit,
        policy,
        lease_seconds=settings.retry_claim_lease_seconds,
        handler_timeout_seconds=settings.webhook_handler_timeout_seconds or None,
    )
    ingest = IngestCoordinator(
        store,
        dispatcher,
        audit,
        channel_secrets={
            WebhookEventSource.MAIN: settings.stripe_webhook_secret,
            WebhookEventSource.CONNECT: settings.stripe_connect_webhook_secret,
        },
        tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )
    scheduler = RetryScheduler(
        store,
        dispatcher,
        batch_size=settings.retry_batch_size,
        lease_seconds=settings.retry_claim_lease_seconds,
        pending_recovery_seconds=settings.pending_recovery_seconds,
    )
    return WebhookServices(
        settings=settings,
        session_factory=session_factory,
        policy=policy,
        store=store,
        audit=audit,
        registry=registry,
        dispatcher=dispatcher,
        ingest=ingest,
        scheduler=scheduler,
    )
