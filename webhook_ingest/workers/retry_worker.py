"""
Retry worker - re-drives failed webhook events until they succeed or exhaust retries.
Runs every RETRY_POLL_INTERVAL_SECONDS, picks FAILED rows whose next_retry_at <= now.

Every row is claimed before dispatch (conditional UPDATE that pushes
next_retry_at out by a lease), so overlapping passes or several app instances
never run the same event twice. The same pass recovers rows stuck PENDING
because the process died between recording and writing back a result.

Claimed rows are dispatched concurrently, so one slow handler does not hold
up the rest of the batch.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from webhook_ingest.errors import PersistenceError
from webhook_ingest.models.webhook_event import WebhookEvent
from webhook_ingest.schemas.webhook_events import RetryPassResult
from webhook_ingest.services.dispatcher import WebhookDispatcher
from webhook_ingest.services.event_store import EventStore
from webhook_ingest.utils.logging import (
    event_log_extra,
    generate_correlation_id,
    set_correlation_id,
)
from webhook_ingest.utils.metrics import utcnow
from webhook_ingest.utils.redis import write_heartbeat

logger = logging.getLogger(__name__)

WORKER_NAME = "retry_worker"


class RetryScheduler:
    def __init__(
        self,
        store: EventStore,
        dispatcher: WebhookDispatcher,
        batch_size: int = 50,
        lease_seconds: int = 300,
        pending_recovery_seconds: int = 900,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.pending_recovery_seconds = pending_recovery_seconds

    async def run_retry_pass(self, now: Optional[datetime] = None) -> RetryPassResult:
        """One sweep over due retries and stale pending rows."""
        now = now or utcnow()
        summary = RetryPassResult()
        claimed: list[tuple[WebhookEvent, bool]] = []

        for event in await self.store.find_retry_eligible(now, self.batch_size):
            if await self._claim(self.store.claim_for_retry, event, now, summary):
                summary.attempted += 1
                claimed.append((event, True))

        if self.pending_recovery_seconds > 0:
            cutoff = now - timedelta(seconds=self.pending_recovery_seconds)
            for event in await self.store.find_stale_pending(cutoff, now, self.batch_size):
                if await self._claim(self.store.claim_stale_pending, event, now, summary):
                    logger.warning(
                        "Recovering webhook %s left pending since %s",
                        event.provider_event_id, event.received_at, extra=event_log_extra(event),
                    )
                    summary.recovered += 1
                    claimed.append((event, False))

        results = await asyncio.gather(
            *(self.dispatcher.dispatch(event, is_retry=is_retry) for event, is_retry in claimed),
            return_exceptions=True,
        )
        for (event, _), result in zip(claimed, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Dispatch of webhook %s crashed: %s", event.provider_event_id, str(result),
                    extra=event_log_extra(event), exc_info=result,
                )
                summary.failed += 1
            elif result.success:
                summary.succeeded += 1
            else:
                summary.failed += 1

        return summary

    async def _claim(self, claim, event: WebhookEvent, now: datetime, summary: RetryPassResult) -> bool:
        """Claim one row; rows already dispatching in this process are skipped."""
        if self.dispatcher.is_running(event.id):
            summary.skipped += 1
            return False
        try:
            claimed = await claim(event, now, self.lease_seconds)
        except PersistenceError as e:
            logger.error(
                "Could not claim webhook %s: %s", event.provider_event_id, str(e),
                extra={**event_log_extra(event), "error_code": "persistence_error"},
            )
            return False
        if not claimed:
            summary.skipped += 1
        return claimed


async def run_retry_worker(scheduler: RetryScheduler, poll_interval_seconds: int = 30):
    """Main retry worker loop. Runs continuously."""
    logger.info("Retry worker started (poll every %ds)", poll_interval_seconds)

    while True:
        # one correlation id per pass, inherited by its dispatch tasks and audit rows
        set_correlation_id(f"retry-{generate_correlation_id()}")
        try:
            summary = await scheduler.run_retry_pass()
            if summary.attempted or summary.recovered or summary.skipped:
                logger.info(
                    "Retry pass: attempted=%d succeeded=%d failed=%d skipped=%d recovered=%d",
                    summary.attempted, summary.succeeded, summary.failed,
                    summary.skipped, summary.recovered,
                )
        except Exception as e:
            logger.error("Retry worker error: %s", str(e), exc_info=True)

        await write_heartbeat(WORKER_NAME)
        await asyncio.sleep(poll_interval_seconds)
