"""
Test configuration and fixtures.
Uses a file-backed SQLite database per test so concurrent sessions see each
other's commits. No external services are contacted.
"""
import json
import os
import time

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./webhook_ingest_test.db")
os.environ.setdefault("RETRY_WORKER_ENABLED", "false")

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from webhook_ingest.config import Settings
from webhook_ingest.database import Base
from webhook_ingest.models.webhook_event import WebhookEventSource
from webhook_ingest.schemas.webhook_events import RequestContext, VerifiedEvent
from webhook_ingest.services.dispatcher import WebhookDispatcher
from webhook_ingest.services.event_store import EventStore
from webhook_ingest.services.handler_registry import HandlerRegistry
from webhook_ingest.services.ingest import IngestCoordinator
from webhook_ingest.services.retry_policy import RetryPolicy
from webhook_ingest.utils.webhook_signatures import sign_payload

MAIN_SECRET = "whsec_main_test"
CONNECT_SECRET = "whsec_connect_test"
ADMIN_SECRET = "admin-test-secret"


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


class RecordingAuditSink:
    """In-memory audit sink; keeps every entry for assertions."""

    def __init__(self):
        self.entries: list[dict] = []

    async def record(self, action, level, message, metadata, event=None):
        self.entries.append({
            "action": action.value,
            "level": level.value,
            "message": message,
            "metadata": metadata,
            "event_id": event.id if event is not None else None,
        })

    def actions(self) -> list[str]:
        return [e["action"] for e in self.entries]


def make_stripe_event(
    event_id: str = "evt_test_1",
    event_type: str = "payout.paid",
    account: str | None = None,
) -> bytes:
    event = {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "api_version": "2023-10-16",
        "created": int(time.time()),
        "data": {"object": {"id": "po_123", "amount": 2500}},
    }
    if account:
        event["account"] = account
    return json.dumps(event).encode("utf-8")


def make_verified_event(event_id: str = "evt_test_1", event_type: str = "payout.paid") -> VerifiedEvent:
    body = make_stripe_event(event_id, event_type)
    return VerifiedEvent(
        id=event_id,
        type=event_type,
        api_version="2023-10-16",
        payload=json.loads(body),
        raw_body=body.decode("utf-8"),
    )


@pytest.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database file for each test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'webhooks.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def policy():
    return RetryPolicy(max_retries=3, base_delay_ms=1000, jitter_enabled=False)


@pytest.fixture
def store(session_factory, policy):
    return EventStore(session_factory, policy)


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def dispatcher(store, registry, audit, policy):
    return WebhookDispatcher(store, registry, audit, policy)


@pytest.fixture
def coordinator(store, dispatcher, audit):
    coordinator = IngestCoordinator(
        store,
        dispatcher,
        audit,
        channel_secrets={
            WebhookEventSource.MAIN: MAIN_SECRET,
            WebhookEventSource.CONNECT: CONNECT_SECRET,
        },
        tolerance_seconds=300,
    )
    yield coordinator


@pytest.fixture
def request_context():
    return RequestContext(
        ip_address="127.0.0.1",
        user_agent="Stripe/1.0 (+https://stripe.com/docs/webhooks)",
        correlation_id="test-correlation-id",
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'webhooks.db'}",
        stripe_webhook_secret=MAIN_SECRET,
        stripe_connect_webhook_secret=CONNECT_SECRET,
        admin_jwt_secret=ADMIN_SECRET,
        webhook_retry_jitter_enabled=False,
        retry_worker_enabled=False,
    )


@pytest.fixture
def signed():
    """Build (body, signature header) for a Stripe event on a channel secret."""
    def _signed(body: bytes, secret: str = MAIN_SECRET, timestamp: int | None = None):
        return body, sign_payload(body, secret, timestamp)
    return _signed


@pytest.fixture
def stripe_event():
    return make_stripe_event


@pytest.fixture
def verified_event():
    return make_verified_event
