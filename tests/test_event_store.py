"""
Tests for webhook_ingest/services/event_store.py against a real SQLite database.

Covers:
- Record / duplicate detection (sequential and concurrent)
- Conditional status transitions
- Retry eligibility and claim exclusivity
- Stale pending recovery queries
- Persistence failures
- Stats aggregation
"""
import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from webhook_ingest.errors import PersistenceError
from webhook_ingest.models.webhook_event import WebhookEvent, WebhookEventSource, WebhookEventStatus
from webhook_ingest.schemas.webhook_events import ProcessingResult
from webhook_ingest.services.event_store import EventStore
from webhook_ingest.utils.metrics import ensure_utc, utcnow


async def _all_rows(session_factory) -> list[WebhookEvent]:
    async with session_factory() as db:
        result = await db.execute(select(WebhookEvent).order_by(WebhookEvent.received_at))
        return list(result.scalars().all())


async def _failed_event(store, verified_event, request_context, event_id="evt_fail", due_in=-1):
    """Record an event and move it to FAILED with next_retry_at relative to now."""
    outcome = await store.record_or_detect_duplicate(
        verified_event(event_id), WebhookEventSource.MAIN, request_context,
    )
    next_retry_at = utcnow() + timedelta(seconds=due_in)
    assert await store.mark_failed(outcome.record.id, "boom", next_retry_at, 12)
    return await store.get(outcome.record.id)


# ---------------------------------------------------------------------------
# record_or_detect_duplicate
# ---------------------------------------------------------------------------

class TestRecordOrDetectDuplicate:
    async def test_first_delivery_is_pending(self, store, verified_event, request_context):
        outcome = await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        assert outcome.is_duplicate is False
        record = await store.get(outcome.record.id)
        assert record.status == WebhookEventStatus.PENDING.value
        assert record.provider_event_id == "evt_1"
        assert record.source == "main"
        assert record.retry_count == 0
        assert record.max_retries == 3
        assert record.backoff_multiplier == 2.0
        assert record.next_retry_at is None
        assert len(record.payload_hash) == 64
        assert record.correlation_id == "test-correlation-id"

    async def test_metadata_and_tags(self, store, verified_event, request_context):
        outcome = await store.record_or_detect_duplicate(
            verified_event("evt_1", "payout.paid"), WebhookEventSource.CONNECT, request_context,
        )
        record = await store.get(outcome.record.id)
        assert record.event_metadata["ip_address"] == "127.0.0.1"
        assert record.event_metadata["user_agent"].startswith("Stripe/")
        assert record.event_metadata["retry_attempts"] == 0
        assert record.event_metadata["payload_hash"] == record.payload_hash
        assert "processing_started_at" in record.event_metadata
        assert record.tags == ["payout.paid", "connect", "payout"]

    async def test_second_delivery_is_duplicate(self, store, session_factory, verified_event, request_context):
        first = await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        second = await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        assert second.is_duplicate is True
        assert second.record.status == WebhookEventStatus.DUPLICATE.value
        assert second.record.duplicate_of_id == first.record.id
        assert second.record.event_metadata["duplicate_of_event_id"] == str(first.record.id)

        original = await store.get(first.record.id)
        assert original.status == WebhookEventStatus.PENDING.value
        assert original.event_metadata["duplicate_count"] == 1
        assert len(await _all_rows(session_factory)) == 2

    async def test_duplicate_never_alters_original_status(self, store, verified_event, request_context):
        first = await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        await store.mark_processed(first.record.id, ProcessingResult(success=True, processing_time_ms=5))
        await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        original = await store.get(first.record.id)
        assert original.status == WebhookEventStatus.PROCESSED.value
        assert original.event_metadata["duplicate_count"] == 1

    async def test_duplicate_count_accumulates(self, store, verified_event, request_context):
        first = await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        for _ in range(3):
            await store.record_or_detect_duplicate(
                verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
            )
        original = await store.get(first.record.id)
        assert original.event_metadata["duplicate_count"] == 3
        assert len(await store.list_duplicates(first.record.id)) == 3

    async def test_concurrent_deliveries_record_exactly_one_original(
        self, store, session_factory, verified_event, request_context,
    ):
        outcomes = await asyncio.gather(*[
            store.record_or_detect_duplicate(
                verified_event("evt_race"), WebhookEventSource.MAIN, request_context,
            )
            for _ in range(5)
        ])
        assert sum(1 for o in outcomes if not o.is_duplicate) == 1
        rows = await _all_rows(session_factory)
        originals = [r for r in rows if r.duplicate_of_id is None]
        duplicates = [r for r in rows if r.duplicate_of_id is not None]
        assert len(originals) == 1
        assert len(duplicates) == 4
        assert all(r.status == WebhookEventStatus.DUPLICATE.value for r in duplicates)

    async def test_concurrent_duplicates_count_every_delivery(self, store, verified_event, request_context):
        first = await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        outcomes = await asyncio.gather(*[
            store.record_or_detect_duplicate(
                verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
            )
            for _ in range(5)
        ])
        assert all(o.is_duplicate for o in outcomes)
        original = await store.get(first.record.id)
        assert original.event_metadata["duplicate_count"] == 5
        assert original.version == 6
        assert len(await store.list_duplicates(first.record.id)) == 5

    async def test_status_write_keeps_concurrent_duplicate_count(self, store, verified_event, request_context):
        first = await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        processed, *_ = await asyncio.gather(
            store.mark_processed(
                first.record.id, ProcessingResult(success=True, affected_user_id="cus_1"),
            ),
            *[
                store.record_or_detect_duplicate(
                    verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
                )
                for _ in range(3)
            ],
        )
        assert processed is True
        original = await store.get(first.record.id)
        assert original.status == WebhookEventStatus.PROCESSED.value
        assert original.event_metadata["duplicate_count"] == 3
        assert original.event_metadata["affected_user_id"] == "cus_1"

    async def test_database_error_raises_persistence_error(self, verified_event, request_context):
        broken_factory = MagicMock(side_effect=OperationalError("INSERT", {}, Exception("db down")))
        store = EventStore(broken_factory)
        with pytest.raises(PersistenceError):
            await store.record_or_detect_duplicate(
                verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
            )


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

class TestStatusTransitions:
    async def test_mark_processed_from_pending(self, store, verified_event, request_context):
        outcome = await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        result = ProcessingResult(
            success=True, processing_time_ms=42,
            affected_user_id="user_1", affected_user_type="customer",
            related_resource_ids=["po_123"],
        )
        assert await store.mark_processed(outcome.record.id, result) is True
        record = await store.get(outcome.record.id)
        assert record.status == WebhookEventStatus.PROCESSED.value
        assert record.processed_at is not None
        assert record.processing_duration_ms == 42
        assert record.event_metadata["affected_user_id"] == "user_1"
        assert record.event_metadata["related_resource_ids"] == ["po_123"]

    async def test_mark_failed_sets_retry_schedule(self, store, verified_event, request_context):
        record = await _failed_event(store, verified_event, request_context, due_in=60)
        assert record.status == WebhookEventStatus.FAILED.value
        assert record.retry_count == 0
        assert record.error_message == "boom"
        assert record.failed_at is not None
        assert ensure_utc(record.next_retry_at) > utcnow()

    async def test_mark_failed_only_from_pending(self, store, verified_event, request_context):
        record = await _failed_event(store, verified_event, request_context)
        assert await store.mark_failed(record.id, "again", None) is False

    async def test_processed_is_terminal(self, store, verified_event, request_context):
        outcome = await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        await store.mark_processed(outcome.record.id, ProcessingResult(success=True))
        assert await store.mark_failed(outcome.record.id, "late failure", None) is False
        assert await store.schedule_retry(outcome.record.id, None, 1, "late") is False
        record = await store.get(outcome.record.id)
        assert record.status == WebhookEventStatus.PROCESSED.value

    async def test_duplicate_rows_cannot_transition(self, store, verified_event, request_context):
        await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        dup = await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        assert await store.mark_processed(dup.record.id, ProcessingResult(success=True)) is False

    async def test_failed_can_be_processed(self, store, verified_event, request_context):
        record = await _failed_event(store, verified_event, request_context)
        assert await store.mark_processed(record.id, ProcessingResult(success=True)) is True
        record = await store.get(record.id)
        assert record.status == WebhookEventStatus.PROCESSED.value
        assert record.next_retry_at is None
        assert record.error_message is None

    async def test_schedule_retry_increments_once(self, store, verified_event, request_context):
        record = await _failed_event(store, verified_event, request_context)
        next_at = utcnow() + timedelta(seconds=2)
        assert await store.schedule_retry(record.id, next_at, 1, "boom again", 7) is True
        # Replaying the same write must not count the attempt twice
        assert await store.schedule_retry(record.id, next_at, 1, "boom again", 7) is False
        record = await store.get(record.id)
        assert record.retry_count == 1
        assert record.event_metadata["retry_attempts"] == 1

    async def test_schedule_retry_terminal(self, store, verified_event, request_context):
        record = await _failed_event(store, verified_event, request_context)
        assert await store.schedule_retry(record.id, None, 1, "done") is True
        record = await store.get(record.id)
        assert record.next_retry_at is None
        assert record.is_terminal is True

    async def test_schedule_retry_rejects_zero_count(self, store):
        with pytest.raises(ValueError):
            await store.schedule_retry(MagicMock(), None, 0)

    async def test_status_writes_bump_version(self, store, verified_event, request_context):
        record = await _failed_event(store, verified_event, request_context)
        assert record.version == 2
        assert await store.schedule_retry(record.id, utcnow(), 1, "again") is True
        assert (await store.get(record.id)).version == 3

    async def test_refused_write_leaves_version(self, store, verified_event, request_context):
        record = await _failed_event(store, verified_event, request_context)
        assert await store.mark_failed(record.id, "again", None) is False
        assert (await store.get(record.id)).version == record.version

    async def test_unknown_id_returns_false(self, store):
        import uuid
        assert await store.mark_processed(uuid.uuid4(), ProcessingResult(success=True)) is False


# ---------------------------------------------------------------------------
# Retry eligibility and claims
# ---------------------------------------------------------------------------

class TestRetryEligibility:
    async def test_due_failed_rows_are_eligible(self, store, verified_event, request_context):
        due = await _failed_event(store, verified_event, request_context, "evt_due", due_in=-5)
        await _failed_event(store, verified_event, request_context, "evt_later", due_in=600)
        eligible = await store.find_retry_eligible(utcnow())
        assert [e.id for e in eligible] == [due.id]

    async def test_ordered_by_next_retry_at(self, store, verified_event, request_context):
        b = await _failed_event(store, verified_event, request_context, "evt_b", due_in=-1)
        a = await _failed_event(store, verified_event, request_context, "evt_a", due_in=-10)
        eligible = await store.find_retry_eligible(utcnow())
        assert [e.id for e in eligible] == [a.id, b.id]

    async def test_limit(self, store, verified_event, request_context):
        for i in range(3):
            await _failed_event(store, verified_event, request_context, f"evt_{i}")
        assert len(await store.find_retry_eligible(utcnow(), limit=2)) == 2

    async def test_exhausted_rows_not_eligible(self, store, verified_event, request_context):
        record = await _failed_event(store, verified_event, request_context)
        for count in (1, 2, 3):
            await store.schedule_retry(record.id, utcnow() - timedelta(seconds=1), count, "x")
        assert await store.find_retry_eligible(utcnow() + timedelta(days=1)) == []

    async def test_pending_and_processed_not_eligible(self, store, verified_event, request_context):
        outcome = await store.record_or_detect_duplicate(
            verified_event("evt_pending"), WebhookEventSource.MAIN, request_context,
        )
        done = await store.record_or_detect_duplicate(
            verified_event("evt_done"), WebhookEventSource.MAIN, request_context,
        )
        await store.mark_processed(done.record.id, ProcessingResult(success=True))
        assert outcome.record.status == WebhookEventStatus.PENDING.value
        assert await store.find_retry_eligible(utcnow() + timedelta(days=1)) == []


class TestClaimForRetry:
    async def test_claim_moves_next_retry_at_by_lease(self, store, verified_event, request_context):
        record = await _failed_event(store, verified_event, request_context)
        now = utcnow()
        assert await store.claim_for_retry(record, now, lease_seconds=300) is True
        stored = await store.get(record.id)
        assert ensure_utc(stored.next_retry_at) >= now + timedelta(seconds=299)
        assert await store.find_retry_eligible(now) == []

    async def test_only_one_concurrent_claim_wins(self, store, verified_event, request_context):
        record = await _failed_event(store, verified_event, request_context)
        now = utcnow()
        copies = await asyncio.gather(*[store.get(record.id) for _ in range(4)])
        results = await asyncio.gather(*[
            store.claim_for_retry(copy, now, lease_seconds=300) for copy in copies
        ])
        assert results.count(True) == 1

    async def test_stale_snapshot_cannot_claim(self, store, verified_event, request_context):
        record = await _failed_event(store, verified_event, request_context)
        await store.schedule_retry(record.id, utcnow() - timedelta(seconds=1), 1, "again")
        # record still says retry_count=0
        assert await store.claim_for_retry(record, utcnow(), lease_seconds=300) is False

    async def test_lease_expiry_makes_row_eligible_again(self, store, verified_event, request_context):
        record = await _failed_event(store, verified_event, request_context)
        now = utcnow()
        await store.claim_for_retry(record, now, lease_seconds=60)
        later = now + timedelta(seconds=61)
        eligible = await store.find_retry_eligible(later)
        assert [e.id for e in eligible] == [record.id]
        assert eligible[0].retry_count == 0


class TestStalePending:
    async def test_finds_old_pending_rows(self, store, verified_event, request_context):
        outcome = await store.record_or_detect_duplicate(
            verified_event("evt_stuck"), WebhookEventSource.MAIN, request_context,
        )
        now = utcnow()
        assert await store.find_stale_pending(now - timedelta(minutes=15), now) == []
        future = now + timedelta(minutes=20)
        stale = await store.find_stale_pending(future - timedelta(minutes=15), future)
        assert [s.id for s in stale] == [outcome.record.id]

    async def test_claim_hides_row_until_lease_expires(self, store, verified_event, request_context):
        outcome = await store.record_or_detect_duplicate(
            verified_event("evt_stuck"), WebhookEventSource.MAIN, request_context,
        )
        future = utcnow() + timedelta(minutes=20)
        cutoff = future - timedelta(minutes=15)
        record = (await store.find_stale_pending(cutoff, future))[0]
        assert await store.claim_stale_pending(record, future, lease_seconds=300) is True
        assert await store.claim_stale_pending(record, future, lease_seconds=300) is False
        assert await store.find_stale_pending(cutoff, future) == []
        after_lease = future + timedelta(seconds=301)
        assert len(await store.find_stale_pending(cutoff, after_lease)) == 1
        stored = await store.get(outcome.record.id)
        assert stored.status == WebhookEventStatus.PENDING.value


class TestRenewLease:
    async def test_renew_pushes_next_retry_at(self, store, verified_event, request_context):
        outcome = await store.record_or_detect_duplicate(
            verified_event("evt_busy"), WebhookEventSource.MAIN, request_context,
        )
        lease_until = utcnow() + timedelta(minutes=5)
        assert await store.renew_lease(outcome.record, lease_until) is True
        stored = await store.get(outcome.record.id)
        assert ensure_utc(stored.next_retry_at) == lease_until
        # a leased pending row is not stale even once old enough
        future = utcnow() + timedelta(minutes=4)
        assert await store.find_stale_pending(future, future) == []

    async def test_renew_refused_after_result_written(self, store, verified_event, request_context):
        outcome = await store.record_or_detect_duplicate(
            verified_event("evt_done"), WebhookEventSource.MAIN, request_context,
        )
        await store.mark_processed(outcome.record.id, ProcessingResult(success=True))
        assert await store.renew_lease(outcome.record, utcnow() + timedelta(minutes=5)) is False
        assert (await store.get(outcome.record.id)).next_retry_at is None


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

class TestReads:
    async def test_get_by_provider_event_id_returns_original(self, store, verified_event, request_context):
        first = await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        await store.record_or_detect_duplicate(
            verified_event("evt_1"), WebhookEventSource.MAIN, request_context,
        )
        found = await store.get_by_provider_event_id("evt_1")
        assert found.id == first.record.id
        assert await store.get_by_provider_event_id("evt_missing") is None

    async def test_find_by_account(self, store, verified_event, request_context):
        for event_id, account in (("evt_a1", "acct_1"), ("evt_b1", "acct_2"), ("evt_a2", "acct_1")):
            verified = verified_event(event_id).model_copy(update={"account": account})
            await store.record_or_detect_duplicate(verified, WebhookEventSource.CONNECT, request_context)
        # redelivery of evt_a1 is not listed again
        await store.record_or_detect_duplicate(
            verified_event("evt_a1").model_copy(update={"account": "acct_1"}),
            WebhookEventSource.CONNECT, request_context,
        )

        found = await store.find_by_account("acct_1")
        assert [e.provider_event_id for e in found] == ["evt_a2", "evt_a1"]
        assert [e.provider_event_id for e in await store.find_by_account("acct_1", limit=1)] == ["evt_a2"]
        assert await store.find_by_account("acct_missing") == []


class TestStats:
    async def test_aggregates(self, store, verified_event, request_context):
        ok = await store.record_or_detect_duplicate(
            verified_event("evt_ok", "payout.paid"), WebhookEventSource.CONNECT, request_context,
        )
        await store.mark_processed(ok.record.id, ProcessingResult(success=True, processing_time_ms=10))
        await store.record_or_detect_duplicate(
            verified_event("evt_ok", "payout.paid"), WebhookEventSource.CONNECT, request_context,
        )
        failed = await _failed_event(store, verified_event, request_context, "evt_bad")
        await store.schedule_retry(failed.id, utcnow(), 1, "card_declined", 30)
        await store.record_or_detect_duplicate(
            verified_event("evt_new", "charge.succeeded"), WebhookEventSource.MAIN, request_context,
        )

        now = utcnow()
        stats = await store.get_stats(now - timedelta(hours=1), now + timedelta(minutes=1))
        assert stats.total_events == 4
        assert stats.events_by_status == {
            "processed": 1, "duplicate": 1, "failed": 1, "pending": 1,
        }
        assert stats.events_by_source == {"connect": 2, "main": 2}
        assert stats.events_by_type["payout.paid"] == 3
        assert stats.events_by_type["charge.succeeded"] == 1
        assert stats.success_rate == round(1 / 3, 4)
        assert stats.retry_rate == round(1 / 3, 4)
        assert stats.average_processing_time_ms == 20.0
        assert stats.top_failure_reasons[0].reason == "card_declined"
        assert stats.top_failure_reasons[0].count == 1

    async def test_filters(self, store, verified_event, request_context):
        await store.record_or_detect_duplicate(
            verified_event("evt_a", "payout.paid"), WebhookEventSource.CONNECT, request_context,
        )
        await store.record_or_detect_duplicate(
            verified_event("evt_b", "charge.succeeded"), WebhookEventSource.MAIN, request_context,
        )
        now = utcnow()
        start, end = now - timedelta(hours=1), now + timedelta(minutes=1)
        assert (await store.get_stats(start, end, source="main")).total_events == 1
        assert (await store.get_stats(start, end, event_type="payout.paid")).total_events == 1

    async def test_empty_window(self, store):
        now = utcnow()
        stats = await store.get_stats(now - timedelta(days=1), now)
        assert stats.total_events == 0
        assert stats.success_rate == 0.0
        assert stats.top_failure_reasons == []
