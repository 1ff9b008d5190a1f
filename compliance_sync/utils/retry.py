"""
Retry policy utilities for regulator delivery.

Computes the backoff delay applied to a queue item after a failed delivery
attempt. Only the strategies recognised by the sync configuration are
supported: fixed and exponential.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from compliance_sync.config.settings import SyncSettings, settings


class RetryStrategy(str, Enum):
    """Retry strategy types."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior of outbound queue items."""
    max_retries: int = 3
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    base_delay: float = 60.0
    max_delay: float = 3600.0
    backoff_multiplier: float = 2.0

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays cannot be negative")
        if not isinstance(self.strategy, RetryStrategy):
            # Accept the raw configuration value ("fixed" / "exponential")
            object.__setattr__(self, "strategy", parse_strategy(self.strategy))

    @classmethod
    def from_settings(cls, sync_settings: Optional[SyncSettings] = None) -> "RetryPolicy":
        """Build the policy from the {maxRetries, backoffStrategy} sync options."""
        sync_settings = sync_settings or settings.sync
        return cls(
            max_retries=sync_settings.max_retries,
            strategy=parse_strategy(sync_settings.backoff_strategy),
            base_delay=sync_settings.backoff_base_seconds,
            max_delay=sync_settings.backoff_max_seconds,
        )

    def calculate_delay(self, retry_count: int) -> float:
        """
        Calculate the delay in seconds after the given number of failures.

        Args:
            retry_count: Failures recorded so far (1 after the first failure)
        """
        if retry_count <= 0 or self.base_delay == 0:
            return 0.0

        if self.strategy == RetryStrategy.FIXED:
            delay = self.base_delay
        else:  # EXPONENTIAL
            delay = self.base_delay * (self.backoff_multiplier ** (retry_count - 1))

        return min(delay, self.max_delay)

    def next_attempt_at(self, retry_count: int, now: datetime) -> Optional[datetime]:
        """Earliest time the item may be claimed again, or None when immediately eligible."""
        delay = self.calculate_delay(retry_count)
        if delay <= 0:
            return None
        return now + timedelta(seconds=delay)


def parse_strategy(value) -> RetryStrategy:
    """Parse a backoff strategy option, rejecting unknown values."""
    if isinstance(value, RetryStrategy):
        return value
    try:
        return RetryStrategy(str(value).strip().lower())
    except ValueError:
        raise ValueError(
            f"Unknown backoff strategy '{value}', expected one of: "
            f"{', '.join(s.value for s in RetryStrategy)}"
        )
