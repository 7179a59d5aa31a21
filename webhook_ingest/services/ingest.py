"""
Ingest coordinator - verify, record, acknowledge, then dispatch in the background.

The ack never waits on the business handler: Stripe times out deliveries after
a few seconds, so dispatch runs as a detached asyncio task. Task references are
kept until they finish so they are not garbage-collected mid-flight, and
drain() lets the lifespan wait for them on shutdown.
"""
import asyncio
import logging
from typing import Mapping, Optional

from webhook_ingest.models.webhook_event import WebhookEvent, WebhookEventSource
from webhook_ingest.schemas.webhook_events import AckResponse, RequestContext
from webhook_ingest.services.audit import AuditAction, AuditLevel, AuditSink
from webhook_ingest.services.dispatcher import WebhookDispatcher
from webhook_ingest.services.event_store import EventStore
from webhook_ingest.utils.logging import event_log_extra
from webhook_ingest.utils.metrics import ensure_utc
from webhook_ingest.utils.webhook_signatures import (
    DEFAULT_TOLERANCE_SECONDS,
    verify_stripe_signature,
)

logger = logging.getLogger(__name__)


class IngestCoordinator:
    def __init__(
        self,
        store: EventStore,
        dispatcher: WebhookDispatcher,
        audit: AuditSink,
        channel_secrets: Mapping[WebhookEventSource, str],
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.audit = audit
        self.channel_secrets = dict(channel_secrets)
        self.tolerance_seconds = tolerance_seconds
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def ingest(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        source: WebhookEventSource,
        request_context: RequestContext,
    ) -> AckResponse:
        """
        Handle one inbound delivery and return the ack.

        Raises InvalidSignatureError / MalformedEventError before anything is
        stored, and PersistenceError if the record could not be written. Either
        way the caller must not acknowledge, so Stripe redelivers.
        """
        source = WebhookEventSource(source)
        verified = verify_stripe_signature(
            raw_body,
            signature_header,
            self.channel_secrets.get(source, ""),
            self.tolerance_seconds,
        )

        outcome = await self.store.record_or_detect_duplicate(verified, source, request_context)
        record = outcome.record
        log_extra = event_log_extra(record)

        if outcome.is_duplicate:
            logger.info(
                "Duplicate %s webhook %s acknowledged", verified.type, verified.id,
                extra=log_extra,
            )
            await self.audit.record(
                AuditAction.WEBHOOK_DUPLICATE,
                AuditLevel.WARNING,
                f"Duplicate delivery of {verified.type} event {verified.id}",
                {
                    "duplicate_of_id": str(record.duplicate_of_id),
                    "source": source.value,
                    "ip_address": request_context.ip_address,
                },
                event=record,
            )
        else:
            logger.info(
                "Received %s webhook %s", verified.type, verified.id, extra=log_extra,
            )
            await self.audit.record(
                AuditAction.WEBHOOK_RECEIVED,
                AuditLevel.INFO,
                f"Received {verified.type} event {verified.id}",
                {
                    "source": source.value,
                    "provider_account_id": verified.account,
                    "api_version": verified.api_version,
                    "ip_address": request_context.ip_address,
                },
                event=record,
            )
            self._spawn_dispatch(record)

        return AckResponse(
            event_id=verified.id,
            event_type=verified.type,
            internal_id=str(record.id),
            received_at=ensure_utc(record.received_at),
            duplicate=outcome.is_duplicate,
        )

    def _spawn_dispatch(self, record: WebhookEvent) -> None:
        task = asyncio.create_task(
            self.dispatcher.dispatch(record),
            name=f"webhook-dispatch-{record.provider_event_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_dispatch_done)

    def _on_dispatch_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Dispatch task %s crashed: %s", task.get_name(), str(exc),
                exc_info=exc,
            )

    async def drain(self, timeout: float = 10.0) -> int:
        """
        Wait up to timeout seconds for in-flight dispatches, then cancel the rest.
        Returns how many were cancelled; their rows stay pending and are picked
        up by pending recovery.
        """
        if not self._tasks:
            return 0
        pending_tasks = list(self._tasks)
        _, still_running = await asyncio.wait(pending_tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(
                "Cancelled %d webhook dispatches still running at shutdown",
                len(still_running),
            )
        return len(still_running)
