"""
Webhook endpoints - receive Stripe events on two channels.

- POST /webhooks/main     - platform account events (payments, charges, checkout)
- POST /webhooks/connect  - connected account events (accounts, payouts, transfers)
- GET  /webhooks/stats    - admin: ingestion statistics over a time window
- GET  /webhooks/events/{id} - admin: one stored event, without its raw body

Processing order for deliveries:
1. Signature validation over the raw body (400 on failure, nothing stored)
2. Record or detect duplicate (500 if the store is down, so Stripe redelivers)
3. Ack immediately; the business handler runs in the background
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from webhook_ingest.api.deps import get_current_admin, get_services
from webhook_ingest.errors import (
    InvalidSignatureError,
    MalformedEventError,
    PersistenceError,
)
from webhook_ingest.models.webhook_event import WebhookEvent, WebhookEventSource
from webhook_ingest.schemas.webhook_events import (
    AckResponse,
    RequestContext,
    WebhookEventDetail,
    WebhookStatsResponse,
)
from webhook_ingest.services.container import WebhookServices
from webhook_ingest.utils.logging import get_correlation_id
from webhook_ingest.utils.metrics import ensure_utc, utcnow

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

DEFAULT_STATS_WINDOW = timedelta(days=7)


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        forwarded_for=request.headers.get("x-forwarded-for"),
        signature=request.headers.get("stripe-signature"),
        correlation_id=get_correlation_id(),
    )


async def _receive(
    source: WebhookEventSource, request: Request, services: WebhookServices,
) -> AckResponse:
    body = await request.body()
    try:
        return await services.ingest.ingest(
            body,
            request.headers.get("stripe-signature"),
            source,
            _request_context(request),
        )
    except InvalidSignatureError as e:
        logger.warning(
            "Rejected %s webhook: %s", source.value, str(e),
            extra={"source": source.value, "error_code": "invalid_signature"},
        )
        raise HTTPException(status_code=e.status_code, detail="Invalid signature")
    except MalformedEventError as e:
        logger.warning(
            "Rejected %s webhook: %s", source.value, str(e),
            extra={"source": source.value, "error_code": "malformed_event"},
        )
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except PersistenceError as e:
        logger.error(
            "Failed to record %s webhook: %s", source.value, str(e),
            extra={"source": source.value, "error_code": "persistence_error"},
        )
        raise HTTPException(status_code=e.status_code, detail="Failed to record webhook")


@router.post("/main", response_model=AckResponse)
async def main_webhook(
    request: Request,
    services: WebhookServices = Depends(get_services),
):
    """Stripe events for the platform account."""
    return await _receive(WebhookEventSource.MAIN, request, services)


@router.post("/connect", response_model=AckResponse)
async def connect_webhook(
    request: Request,
    services: WebhookServices = Depends(get_services),
):
    """Stripe events for connected accounts."""
    return await _receive(WebhookEventSource.CONNECT, request, services)


@router.get("/stats", response_model=WebhookStatsResponse)
async def webhook_stats(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    source: Optional[WebhookEventSource] = Query(None),
    event_type: Optional[str] = Query(None, max_length=100),
    admin: dict = Depends(get_current_admin),
    services: WebhookServices = Depends(get_services),
):
    """Counts by type/status/source, success and retry rates. Defaults to the last 7 days."""
    end = ensure_utc(end_date) if end_date else utcnow()
    start = ensure_utc(start_date) if start_date else end - DEFAULT_STATS_WINDOW
    if start > end:
        raise HTTPException(status_code=400, detail="start_date must be before end_date")

    try:
        return await services.store.get_stats(
            start, end, source=source.value if source else None, event_type=event_type,
        )
    except PersistenceError as e:
        logger.error("Webhook stats query failed: %s", str(e))
        raise HTTPException(status_code=500, detail="Failed to load webhook stats")


def _event_detail(event: WebhookEvent) -> WebhookEventDetail:
    return WebhookEventDetail(
        id=str(event.id),
        provider_event_id=event.provider_event_id,
        event_type=event.event_type,
        source=event.source,
        status=event.status,
        provider_account_id=event.provider_account_id,
        received_at=ensure_utc(event.received_at),
        processed_at=ensure_utc(event.processed_at),
        failed_at=ensure_utc(event.failed_at),
        next_retry_at=ensure_utc(event.next_retry_at),
        retry_count=event.retry_count,
        max_retries=event.max_retries,
        error_message=event.error_message,
        duplicate_of_id=str(event.duplicate_of_id) if event.duplicate_of_id else None,
        metadata=event.event_metadata or {},
        tags=event.tags or [],
    )


@router.get("/events/{event_id}", response_model=WebhookEventDetail)
async def get_webhook_event(
    event_id: uuid.UUID,
    admin: dict = Depends(get_current_admin),
    services: WebhookServices = Depends(get_services),
):
    """One stored event by internal id. The raw body is never returned."""
    try:
        event = await services.store.get(event_id)
    except PersistenceError as e:
        logger.error("Webhook event lookup failed: %s", str(e))
        raise HTTPException(status_code=500, detail="Failed to load webhook event")
    if event is None:
        raise HTTPException(status_code=404, detail="Webhook event not found")
    return _event_detail(event)
