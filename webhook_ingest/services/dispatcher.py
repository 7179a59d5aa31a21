"""
Webhook dispatcher - the single path from a recorded event to its business
handler, shared by first delivery and the retry worker.

Handler failures never escape: they become a failed ProcessingResult, are
written back to the store with the next retry time, and are audited.
Write-back failures are logged and left for the retry worker's lease or
pending recovery to pick up again.

Attempts on one event never overlap. Ids being dispatched in this process are
tracked in memory, and while a handler runs its row lease (next_retry_at) is
renewed so other instances leave the row alone.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from webhook_ingest.errors import PersistenceError
from webhook_ingest.models.webhook_event import WebhookEvent
from webhook_ingest.schemas.webhook_events import ProcessingResult
from webhook_ingest.services.audit import AuditAction, AuditLevel, AuditSink
from webhook_ingest.services.event_store import EventStore
from webhook_ingest.services.handler_registry import HandlerRegistry
from webhook_ingest.services.retry_policy import RetryPolicy
from webhook_ingest.utils.logging import event_log_extra
from webhook_ingest.utils.metrics import Timer, utcnow

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    def __init__(
        self,
        store: EventStore,
        registry: HandlerRegistry,
        audit: AuditSink,
        policy: Optional[RetryPolicy] = None,
        lease_seconds: int = 300,
        handler_timeout_seconds: Optional[float] = None,
    ):
        self.store = store
        self.registry = registry
        self.audit = audit
        self.policy = policy or RetryPolicy()
        self.lease_seconds = lease_seconds
        self.handler_timeout_seconds = handler_timeout_seconds
        self._running: set[uuid.UUID] = set()

    def is_running(self, event_id: uuid.UUID) -> bool:
        return event_id in self._running

    async def dispatch(self, event: WebhookEvent, is_retry: bool = False) -> ProcessingResult:
        """Run the handler for one event and persist the outcome."""
        log_extra = event_log_extra(event)
        if event.id in self._running:
            logger.warning(
                "Webhook %s is already being dispatched; skipping overlapping attempt",
                event.provider_event_id, extra=log_extra,
            )
            return ProcessingResult(success=False, error="dispatch already in progress")

        self._running.add(event.id)
        try:
            return await self._dispatch(event, is_retry, log_extra)
        finally:
            self._running.discard(event.id)

    async def _dispatch(self, event: WebhookEvent, is_retry: bool, log_extra: dict) -> ProcessingResult:
        timer = Timer().start()
        keeper = asyncio.create_task(
            self._keep_lease(event), name=f"webhook-lease-{event.provider_event_id}",
        )
        try:
            result = await self._run_handler(event, log_extra)
        finally:
            keeper.cancel()
            await asyncio.gather(keeper, return_exceptions=True)
        elapsed_ms = timer.stop()
        if result.processing_time_ms is None:
            result = result.model_copy(update={"processing_time_ms": elapsed_ms})

        try:
            if result.success:
                await self._record_success(event, result)
            elif is_retry:
                await self._record_retry_failure(event, result)
            else:
                await self._record_first_failure(event, result)
        except PersistenceError as e:
            logger.error(
                "Failed to write back result for webhook %s: %s", event.provider_event_id, str(e),
                extra={**log_extra, "error_code": "persistence_error"},
            )
        return result

    async def _run_handler(self, event: WebhookEvent, log_extra: dict) -> ProcessingResult:
        try:
            if self.handler_timeout_seconds:
                return await asyncio.wait_for(
                    self.registry.process(event), timeout=self.handler_timeout_seconds,
                )
            return await self.registry.process(event)
        except asyncio.TimeoutError:
            logger.warning(
                "Handler for %s timed out after %ss", event.event_type, self.handler_timeout_seconds,
                extra={**log_extra, "error_code": "handler_timeout"},
            )
            return ProcessingResult(
                success=False, error=f"Handler timed out after {self.handler_timeout_seconds}s",
            )
        except Exception as e:
            logger.warning(
                "Handler for %s raised: %s", event.event_type, str(e),
                extra=log_extra, exc_info=True,
            )
            return ProcessingResult(success=False, error=str(e) or type(e).__name__)

    async def _keep_lease(self, event: WebhookEvent) -> None:
        """Renew the row lease every third of its length until cancelled."""
        interval = max(self.lease_seconds / 3, 1)
        while True:
            await asyncio.sleep(interval)
            lease_until = utcnow() + timedelta(seconds=self.lease_seconds)
            try:
                renewed = await self.store.renew_lease(event, lease_until)
            except PersistenceError as e:
                logger.warning(
                    "Could not renew lease on webhook %s: %s", event.provider_event_id, str(e),
                    extra={**event_log_extra(event), "error_code": "persistence_error"},
                )
                continue
            if not renewed:
                logger.warning(
                    "Lease on webhook %s no longer held", event.provider_event_id,
                    extra=event_log_extra(event),
                )
                return

    async def _record_success(self, event: WebhookEvent, result: ProcessingResult) -> None:
        updated = await self.store.mark_processed(event.id, result)
        if not updated:
            logger.warning(
                "Webhook %s was not in a processable state; result dropped",
                event.provider_event_id, extra=event_log_extra(event),
            )
            return
        logger.info(
            "Processed %s webhook %s in %sms", event.event_type, event.provider_event_id,
            result.processing_time_ms, extra=event_log_extra(event),
        )
        await self.audit.record(
            AuditAction.WEBHOOK_PROCESSED,
            AuditLevel.INFO,
            f"Webhook {event.event_type} processed",
            {
                "retry_count": event.retry_count,
                "processing_time_ms": result.processing_time_ms,
                "affected_user_id": result.affected_user_id,
                "affected_user_type": result.affected_user_type,
                "related_resource_ids": result.related_resource_ids,
            },
            event=event,
        )

    async def _record_first_failure(self, event: WebhookEvent, result: ProcessingResult) -> None:
        now = utcnow()
        next_retry_at = None
        if event.max_retries > 0:
            next_retry_at = self.policy.next_retry_at(now, 0, event.backoff_multiplier)

        updated = await self.store.mark_failed(
            event.id, result.error, next_retry_at, result.processing_time_ms,
        )
        if not updated:
            logger.warning(
                "Webhook %s left pending before failure could be recorded",
                event.provider_event_id, extra=event_log_extra(event),
            )
            return
        await self._audit_failure(event, result, 0)
        if next_retry_at is None:
            await self._audit_exhausted(event, result, 0)
        else:
            await self._audit_scheduled(event, next_retry_at, 0)

    async def _record_retry_failure(self, event: WebhookEvent, result: ProcessingResult) -> None:
        now = utcnow()
        new_count = event.retry_count + 1
        terminal = new_count >= event.max_retries
        next_retry_at = None
        if not terminal:
            next_retry_at = self.policy.next_retry_at(now, new_count, event.backoff_multiplier)

        updated = await self.store.schedule_retry(
            event.id, next_retry_at, new_count, result.error, result.processing_time_ms,
        )
        if not updated:
            logger.warning(
                "Retry result for webhook %s lost a concurrent update",
                event.provider_event_id, extra=event_log_extra(event),
            )
            return
        await self._audit_failure(event, result, new_count)
        if terminal:
            await self._audit_exhausted(event, result, new_count)
        else:
            await self._audit_scheduled(event, next_retry_at, new_count)

    async def _audit_failure(self, event: WebhookEvent, result: ProcessingResult, retry_count: int) -> None:
        logger.warning(
            "Webhook %s failed (attempt %d): %s", event.provider_event_id,
            retry_count + 1, result.error,
            extra={**event_log_extra(event), "retry_count": retry_count},
        )
        await self.audit.record(
            AuditAction.WEBHOOK_FAILED,
            AuditLevel.ERROR,
            f"Webhook {event.event_type} failed: {result.error}",
            {
                "error": result.error,
                "retry_count": retry_count,
                "processing_time_ms": result.processing_time_ms,
            },
            event=event,
        )

    async def _audit_scheduled(self, event: WebhookEvent, next_retry_at: datetime, retry_count: int) -> None:
        await self.audit.record(
            AuditAction.WEBHOOK_RETRY_SCHEDULED,
            AuditLevel.INFO,
            f"Retry {retry_count + 1} of {event.max_retries} scheduled",
            {
                "retry_count": retry_count,
                "max_retries": event.max_retries,
                "next_retry_at": next_retry_at.isoformat(),
            },
            event=event,
        )

    async def _audit_exhausted(self, event: WebhookEvent, result: ProcessingResult, retry_count: int) -> None:
        logger.error(
            "Webhook %s exhausted %d retries: %s", event.provider_event_id,
            event.max_retries, result.error,
            extra={**event_log_extra(event), "retry_count": retry_count, "error_code": "retries_exhausted"},
        )
        await self.audit.record(
            AuditAction.WEBHOOK_RETRIES_EXHAUSTED,
            AuditLevel.CRITICAL,
            f"Webhook {event.event_type} failed permanently after {retry_count} retries",
            {
                "error": result.error,
                "retry_count": retry_count,
                "max_retries": event.max_retries,
            },
            event=event,
        )
