"""
Retry policy - exponential backoff with jitter for failed webhook dispatches.

delay = min(base_delay * multiplier ** retry_count, max_delay) + jitter
where jitter is uniform in [0, jitter_ratio * delay]. Jitter spreads out
retries when many events fail at once (e.g. a handler dependency outage).
"""
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from webhook_ingest.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 300000
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True
    jitter_ratio: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.webhook_max_retries,
            base_delay_ms=settings.webhook_retry_base_delay_ms,
            max_delay_ms=settings.webhook_retry_max_delay_ms,
            backoff_multiplier=settings.webhook_retry_backoff_multiplier,
            jitter_enabled=settings.webhook_retry_jitter_enabled,
        )

    def base_delay_for(self, retry_count: int, multiplier: Optional[float] = None) -> float:
        """Capped exponential delay in ms, before jitter."""
        factor = self.backoff_multiplier if multiplier is None else multiplier
        return min(self.base_delay_ms * (factor ** retry_count), self.max_delay_ms)

    def compute_delay_ms(
        self,
        retry_count: int,
        multiplier: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ) -> float:
        delay = self.base_delay_for(retry_count, multiplier)
        if self.jitter_enabled:
            delay += (rng or random).random() * self.jitter_ratio * delay
        return delay

    def next_retry_at(
        self,
        now: datetime,
        retry_count: int,
        multiplier: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ) -> datetime:
        return now + timedelta(milliseconds=self.compute_delay_ms(retry_count, multiplier, rng))
