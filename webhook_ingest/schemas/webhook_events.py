"""
Schemas passed between the ingestion layers and returned by the webhook API.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from webhook_ingest.models.webhook_event import WebhookEvent


class RequestContext(BaseModel):
    """Request details captured into the record's metadata."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    forwarded_for: Optional[str] = None
    signature: Optional[str] = None
    correlation_id: Optional[str] = None

    def request_headers(self) -> dict:
        return {
            "stripe-signature": self.signature,
            "user-agent": self.user_agent,
            "x-forwarded-for": self.forwarded_for,
        }


class VerifiedEvent(BaseModel):
    """A Stripe event whose signature checked out against the raw body."""
    id: str
    type: str
    account: Optional[str] = None
    api_version: Optional[str] = None
    created: Optional[int] = None
    payload: dict[str, Any]
    raw_body: str


class ProcessingResult(BaseModel):
    """What a business handler reports back for one event."""
    success: bool
    error: Optional[str] = None
    processing_time_ms: Optional[int] = None
    affected_user_id: Optional[str] = None
    affected_user_type: Optional[str] = None  # customer, connected_account, admin
    related_resource_ids: list[str] = Field(default_factory=list)


@dataclass
class RecordOutcome:
    """Result of recording an inbound event."""
    record: WebhookEvent
    is_duplicate: bool


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AckResponse(_CamelModel):
    """Immediate acknowledgement sent back to Stripe."""
    received: bool = True
    event_id: str
    event_type: str
    internal_id: str
    received_at: datetime
    duplicate: bool = False


class RetryPassResult(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0    # claim lost to another worker
    recovered: int = 0  # stale pending rows re-dispatched


class FailureReason(_CamelModel):
    reason: str
    count: int


class TimeRange(_CamelModel):
    start: datetime
    end: datetime


class WebhookStatsResponse(_CamelModel):
    total_events: int
    events_by_type: dict[str, int]
    events_by_status: dict[str, int]
    events_by_source: dict[str, int]
    average_processing_time_ms: float
    success_rate: float
    retry_rate: float
    time_range: TimeRange
    top_failure_reasons: list[FailureReason]


class WebhookEventDetail(_CamelModel):
    """Admin view of one record. Raw payload is never exposed."""
    id: str
    provider_event_id: str
    event_type: str
    source: str
    status: str
    provider_account_id: Optional[str] = None
    received_at: datetime
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    duplicate_of_id: Optional[str] = None
    metadata: dict
    tags: list[str]
