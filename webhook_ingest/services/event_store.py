"""
Event store - durable, uniquely-keyed repository of webhook event records.

All coordination lives in the database, never in process memory:
- idempotency is the partial unique index on provider_event_id
  (two racing inserts: one commits, the loser takes the duplicate path);
- every status write is a conditional UPDATE on the current status;
- retry exclusivity is a check-and-set claim that moves next_retry_at
  forward by a lease, so overlapping workers cannot pick the same row.

Every method opens its own short session and commits before returning.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_ingest.errors import PersistenceError
from webhook_ingest.models.webhook_event import (
    WebhookEvent,
    WebhookEventSource,
    WebhookEventStatus,
    allowed_sources,
)
from webhook_ingest.schemas.webhook_events import (
    FailureReason,
    ProcessingResult,
    RecordOutcome,
    RequestContext,
    TimeRange,
    VerifiedEvent,
    WebhookStatsResponse,
)
from webhook_ingest.services.retry_policy import RetryPolicy
from webhook_ingest.utils.metrics import utcnow
from webhook_ingest.utils.webhook_signatures import compute_payload_hash

logger = logging.getLogger(__name__)

TOP_FAILURE_REASONS = 5
METADATA_WRITE_ATTEMPTS = 10


def _build_tags(event_type: str, source: str) -> list[str]:
    tags = [event_type, source]
    prefix = event_type.split(".", 1)[0]
    if prefix not in tags:
        tags.append(prefix)
    return tags


class EventStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._session_factory = session_factory
        self._policy = retry_policy or RetryPolicy()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def _build_record(
        self,
        verified: VerifiedEvent,
        source: WebhookEventSource,
        context: RequestContext,
        now: datetime,
    ) -> WebhookEvent:
        payload_hash = compute_payload_hash(verified.raw_body.encode("utf-8"))
        return WebhookEvent(
            id=uuid.uuid4(),
            provider_event_id=verified.id,
            event_type=verified.type,
            source=WebhookEventSource(source).value,
            provider_account_id=verified.account,
            api_version=verified.api_version,
            status=WebhookEventStatus.PENDING.value,
            raw_payload=verified.raw_body,
            event_payload=verified.payload,
            payload_hash=payload_hash,
            received_at=now,
            processed_at=None,
            failed_at=None,
            next_retry_at=None,
            processing_duration_ms=None,
            error_message=None,
            duplicate_of_id=None,
            retry_count=0,
            max_retries=self._policy.max_retries,
            backoff_multiplier=self._policy.backoff_multiplier,
            event_metadata={
                "provider_event_id": verified.id,
                "provider_account_id": verified.account,
                "api_version": verified.api_version,
                "ip_address": context.ip_address,
                "user_agent": context.user_agent,
                "request_headers": context.request_headers(),
                "payload_hash": payload_hash,
                "processing_started_at": now.isoformat(),
                "retry_attempts": 0,
            },
            tags=_build_tags(verified.type, WebhookEventSource(source).value),
            correlation_id=context.correlation_id,
            version=1,
            created_at=now,
            updated_at=now,
        )

    async def record_or_detect_duplicate(
        self,
        verified: VerifiedEvent,
        source: WebhookEventSource,
        context: RequestContext,
    ) -> RecordOutcome:
        """
        Insert a PENDING record, or record the delivery as a DUPLICATE of the
        existing one. The original row's status is never touched here.
        """
        now = utcnow()
        record = self._build_record(verified, source, context, now)
        try:
            async with self._session_factory() as db:
                db.add(record)
                await db.commit()
            return RecordOutcome(record=record, is_duplicate=False)
        except IntegrityError:
            logger.info(
                "Stripe event %s already recorded - taking duplicate path", verified.id,
                extra={"provider_event_id": verified.id, "source": record.source},
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record webhook event {verified.id}: {e}") from e

        try:
            shadow = await self._record_duplicate(verified, source, context, now)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record duplicate of {verified.id}: {e}") from e
        return RecordOutcome(record=shadow, is_duplicate=True)

    async def _record_duplicate(
        self,
        verified: VerifiedEvent,
        source: WebhookEventSource,
        context: RequestContext,
        now: datetime,
    ) -> WebhookEvent:
        """
        Shadow row and duplicate_count bump commit together. The bump is
        check-and-set on the original's version; a concurrent writer rolls the
        whole attempt back and it is retried against the fresh row.
        """
        for _ in range(METADATA_WRITE_ATTEMPTS):
            async with self._session_factory() as db:
                result = await db.execute(
                    select(WebhookEvent).where(
                        WebhookEvent.provider_event_id == verified.id,
                        WebhookEvent.duplicate_of_id.is_(None),
                    )
                )
                original = result.scalar_one_or_none()
                if original is None:
                    raise PersistenceError(
                        f"Unique violation for {verified.id} but no original record found"
                    )

                shadow = self._build_record(verified, source, context, now)
                shadow.status = WebhookEventStatus.DUPLICATE.value
                shadow.duplicate_of_id = original.id
                shadow.event_metadata = {
                    **shadow.event_metadata,
                    "duplicate_of_event_id": str(original.id),
                }
                db.add(shadow)

                metadata = dict(original.event_metadata or {})
                metadata["duplicate_count"] = int(metadata.get("duplicate_count", 0)) + 1
                metadata["last_duplicate_at"] = now.isoformat()
                bumped = await db.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.id == original.id, WebhookEvent.version == original.version)
                    .values(event_metadata=metadata, version=original.version + 1, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if bumped.rowcount == 1:
                    await db.commit()
                    return shadow
                await db.rollback()

        raise PersistenceError(f"Original of {verified.id} kept changing while recording a duplicate")

    # ------------------------------------------------------------------
    # Dispatch results
    # ------------------------------------------------------------------

    async def _conditional_update(
        self,
        event_id: uuid.UUID,
        from_statuses: list[str],
        values: dict,
        metadata_updates: dict,
        extra_conditions: tuple = (),
    ) -> bool:
        """
        Apply values if the row is still in one of from_statuses. Returns True on success.

        metadata_updates are merged into the bag as read at `version`. When the
        write misses, an unchanged version means the status guard refused it;
        a moved version means another writer got in first, so re-read and retry.
        """
        try:
            for _ in range(METADATA_WRITE_ATTEMPTS):
                async with self._session_factory() as db:
                    record = await db.get(WebhookEvent, event_id)
                    if record is None:
                        logger.warning("Webhook event %s not found for update", event_id)
                        return False
                    seen_version = record.version
                    metadata = {**(record.event_metadata or {}), **metadata_updates}
                    result = await db.execute(
                        update(WebhookEvent)
                        .where(
                            WebhookEvent.id == event_id,
                            WebhookEvent.version == seen_version,
                            WebhookEvent.status.in_(from_statuses),
                            *extra_conditions,
                        )
                        .values(
                            **values,
                            event_metadata=metadata,
                            version=seen_version + 1,
                            updated_at=utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    await db.commit()
                    if result.rowcount == 1:
                        return True
                    current_version = await db.scalar(
                        select(WebhookEvent.version).where(WebhookEvent.id == event_id)
                    )
                    if current_version is None or current_version == seen_version:
                        return False
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update webhook event {event_id}: {e}") from e
        raise PersistenceError(f"Webhook event {event_id} kept changing under update")

    async def mark_processed(self, event_id: uuid.UUID, result: ProcessingResult) -> bool:
        now = utcnow()
        return await self._conditional_update(
            event_id,
            allowed_sources(WebhookEventStatus.PROCESSED),
            values={
                "status": WebhookEventStatus.PROCESSED.value,
                "processed_at": now,
                "next_retry_at": None,
                "processing_duration_ms": result.processing_time_ms,
                "error_message": None,
            },
            metadata_updates={
                "processing_ended_at": now.isoformat(),
                "processing_duration_ms": result.processing_time_ms,
                "affected_user_id": result.affected_user_id,
                "affected_user_type": result.affected_user_type,
                "related_resource_ids": result.related_resource_ids,
            },
        )

    async def mark_failed(
        self,
        event_id: uuid.UUID,
        error: str,
        next_retry_at: Optional[datetime],
        processing_time_ms: Optional[int] = None,
    ) -> bool:
        """First-attempt failure: PENDING -> FAILED, with the first retry scheduled."""
        now = utcnow()
        return await self._conditional_update(
            event_id,
            [WebhookEventStatus.PENDING.value],
            values={
                "status": WebhookEventStatus.FAILED.value,
                "failed_at": now,
                "next_retry_at": next_retry_at,
                "processing_duration_ms": processing_time_ms,
                "error_message": error,
            },
            metadata_updates={
                "processing_ended_at": now.isoformat(),
                "processing_duration_ms": processing_time_ms,
                "error_message": error,
                "retry_attempts": 0,
            },
        )

    async def schedule_retry(
        self,
        event_id: uuid.UUID,
        next_retry_at: Optional[datetime],
        retry_count: int,
        error: Optional[str] = None,
        processing_time_ms: Optional[int] = None,
    ) -> bool:
        """
        Record a failed retry attempt. retry_count is the new, incremented value;
        next_retry_at=None makes the failure terminal.
        The write only lands if the stored count is exactly retry_count - 1,
        so one attempt can never be counted twice.
        """
        if retry_count < 1:
            raise ValueError("retry_count must be at least 1 for a retry attempt")
        now = utcnow()
        return await self._conditional_update(
            event_id,
            [WebhookEventStatus.FAILED.value],
            values={
                "status": WebhookEventStatus.FAILED.value,
                "retry_count": retry_count,
                "failed_at": now,
                "next_retry_at": next_retry_at,
                "processing_duration_ms": processing_time_ms,
                "error_message": error,
            },
            metadata_updates={
                "processing_ended_at": now.isoformat(),
                "processing_duration_ms": processing_time_ms,
                "error_message": error,
                "retry_attempts": retry_count,
            },
            extra_conditions=(
                WebhookEvent.retry_count == retry_count - 1,
                WebhookEvent.max_retries >= retry_count,
            ),
        )

    # ------------------------------------------------------------------
    # Retry scheduling
    # ------------------------------------------------------------------

    async def find_retry_eligible(
        self, now: datetime, limit: Optional[int] = None,
    ) -> list[WebhookEvent]:
        """FAILED rows due for retry with attempts left, oldest due first."""
        stmt = (
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.FAILED.value,
                WebhookEvent.next_retry_at.is_not(None),
                WebhookEvent.next_retry_at <= now,
                WebhookEvent.retry_count < WebhookEvent.max_retries,
            )
            .order_by(WebhookEvent.next_retry_at.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return await self._fetch_all(stmt)

    async def claim_for_retry(
        self, event: WebhookEvent, now: datetime, lease_seconds: int,
    ) -> bool:
        """
        Take exclusive retry rights over one row. The claim pushes next_retry_at
        out by the lease; if this worker dies mid-dispatch the row becomes
        eligible again once the lease runs out.
        """
        lease_until = now + timedelta(seconds=lease_seconds)
        claimed = await self._claim(
            event,
            lease_until,
            WebhookEvent.status == WebhookEventStatus.FAILED.value,
            WebhookEvent.retry_count == event.retry_count,
            WebhookEvent.retry_count < WebhookEvent.max_retries,
            WebhookEvent.next_retry_at <= now,
        )
        if claimed:
            event.next_retry_at = lease_until
        return claimed

    async def find_stale_pending(
        self, cutoff: datetime, now: datetime, limit: Optional[int] = None,
    ) -> list[WebhookEvent]:
        """PENDING rows received before cutoff whose dispatch never reported back."""
        stmt = (
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.PENDING.value,
                WebhookEvent.received_at <= cutoff,
                or_(WebhookEvent.next_retry_at.is_(None), WebhookEvent.next_retry_at <= now),
            )
            .order_by(WebhookEvent.received_at.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return await self._fetch_all(stmt)

    async def claim_stale_pending(
        self, event: WebhookEvent, now: datetime, lease_seconds: int,
    ) -> bool:
        lease_until = now + timedelta(seconds=lease_seconds)
        claimed = await self._claim(
            event,
            lease_until,
            WebhookEvent.status == WebhookEventStatus.PENDING.value,
            or_(WebhookEvent.next_retry_at.is_(None), WebhookEvent.next_retry_at <= now),
        )
        if claimed:
            event.next_retry_at = lease_until
        return claimed

    async def renew_lease(self, event: WebhookEvent, lease_until: datetime) -> bool:
        """
        Push the lease of a row whose handler is still running. Lands only while
        the row is unchanged since dispatch started (same status and count).
        """
        return await self._claim(
            event,
            lease_until,
            WebhookEvent.status == event.status,
            WebhookEvent.retry_count == event.retry_count,
        )

    async def _claim(self, event: WebhookEvent, lease_until: datetime, *conditions) -> bool:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.id == event.id, *conditions)
                    .values(next_retry_at=lease_until, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to claim webhook event {event.id}: {e}") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _fetch_all(self, stmt) -> list[WebhookEvent]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Webhook event query failed: {e}") from e

    async def get(self, event_id: uuid.UUID) -> Optional[WebhookEvent]:
        try:
            async with self._session_factory() as db:
                return await db.get(WebhookEvent, event_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load webhook event {event_id}: {e}") from e

    async def get_by_provider_event_id(self, provider_event_id: str) -> Optional[WebhookEvent]:
        """The original (non-duplicate) record for a Stripe event id."""
        rows = await self._fetch_all(
            select(WebhookEvent).where(
                WebhookEvent.provider_event_id == provider_event_id,
                WebhookEvent.duplicate_of_id.is_(None),
            )
        )
        return rows[0] if rows else None

    async def find_by_account(self, account_id: str, limit: int = 100) -> list[WebhookEvent]:
        """Original records for a connected account, newest first."""
        return await self._fetch_all(
            select(WebhookEvent)
            .where(
                WebhookEvent.provider_account_id == account_id,
                WebhookEvent.duplicate_of_id.is_(None),
            )
            .order_by(WebhookEvent.received_at.desc())
            .limit(limit)
        )

    async def list_duplicates(self, original_id: uuid.UUID) -> list[WebhookEvent]:
        return await self._fetch_all(
            select(WebhookEvent)
            .where(WebhookEvent.duplicate_of_id == original_id)
            .order_by(WebhookEvent.received_at.asc())
        )

    async def get_stats(
        self,
        start: datetime,
        end: datetime,
        source: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> WebhookStatsResponse:
        """Aggregate counts by type, status and source over a received_at window."""
        filters = [WebhookEvent.received_at >= start, WebhookEvent.received_at <= end]
        if source:
            filters.append(WebhookEvent.source == source)
        if event_type:
            filters.append(WebhookEvent.event_type == event_type)
        where = and_(*filters)
        not_duplicate = WebhookEvent.status != WebhookEventStatus.DUPLICATE.value

        try:
            async with self._session_factory() as db:
                by_status = await self._grouped_counts(db, WebhookEvent.status, where)
                by_type = await self._grouped_counts(db, WebhookEvent.event_type, where)
                by_source = await self._grouped_counts(db, WebhookEvent.source, where)

                avg_ms = (await db.execute(
                    select(func.avg(WebhookEvent.processing_duration_ms)).where(
                        where, WebhookEvent.processing_duration_ms.is_not(None)
                    )
                )).scalar()

                retried = (await db.execute(
                    select(func.count(WebhookEvent.id)).where(
                        where, not_duplicate, WebhookEvent.retry_count > 0
                    )
                )).scalar() or 0

                failure_rows = (await db.execute(
                    select(WebhookEvent.error_message, func.count(WebhookEvent.id).label("count"))
                    .where(
                        where,
                        WebhookEvent.status == WebhookEventStatus.FAILED.value,
                        WebhookEvent.error_message.is_not(None),
                    )
                    .group_by(WebhookEvent.error_message)
                    .order_by(func.count(WebhookEvent.id).desc())
                    .limit(TOP_FAILURE_REASONS)
                )).all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Webhook stats query failed: {e}") from e

        total = sum(by_status.values())
        unique_events = total - by_status.get(WebhookEventStatus.DUPLICATE.value, 0)
        processed = by_status.get(WebhookEventStatus.PROCESSED.value, 0)

        return WebhookStatsResponse(
            total_events=total,
            events_by_type=by_type,
            events_by_status=by_status,
            events_by_source=by_source,
            average_processing_time_ms=round(float(avg_ms or 0), 2),
            success_rate=round(processed / unique_events, 4) if unique_events else 0.0,
            retry_rate=round(retried / unique_events, 4) if unique_events else 0.0,
            time_range=TimeRange(start=start, end=end),
            top_failure_reasons=[
                FailureReason(reason=row.error_message, count=row.count) for row in failure_rows
            ],
        )

    @staticmethod
    async def _grouped_counts(db: AsyncSession, column, where) -> dict[str, int]:
        result = await db.execute(
            select(column, func.count(WebhookEvent.id).label("count"))
            .where(where)
            .group_by(column)
        )
        return {row[0]: row[1] for row in result.all()}
