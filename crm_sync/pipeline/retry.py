"""
Retry / Backlog Policy

Exponential backoff with a cap. Non-retryable failures and items that have
used up their attempts fail permanently and are never claimed again.
"""
import datetime as dt
from dataclasses import dataclass
from typing import Optional

from crm_sync.config import get_settings


@dataclass(frozen=True)
class RetryDecision:
    attempts: int
    retry: bool
    next_retry_at: Optional[dt.datetime] = None
    delay_seconds: float = 0.0


class RetryPolicy:
    """
    delay(n) = min(base * 2**(n-1), cap) for the n-th failed attempt.

    Example with defaults (60s base, 1h cap): 60s, 120s, 240s, ... 3600s.
    """

    def __init__(
        self,
        base_delay_seconds: Optional[float] = None,
        max_delay_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.base_delay_seconds = base_delay_seconds if base_delay_seconds is not None else settings.retry_base_delay_seconds
        self.max_delay_seconds = max_delay_seconds if max_delay_seconds is not None else settings.retry_max_delay_seconds

    def backoff(self, attempts: int) -> float:
        """Delay in seconds after the `attempts`-th failure (1-based)."""
        exponent = max(attempts - 1, 0)
        # Cap the exponent so huge attempt counts cannot overflow
        delay = self.base_delay_seconds * (2 ** min(exponent, 32))
        return float(min(delay, self.max_delay_seconds))

    def decide(
        self,
        previous_attempts: int,
        max_attempts: int,
        retryable: bool,
        now: dt.datetime,
    ) -> RetryDecision:
        """Record one more failed attempt and decide whether to retry."""
        attempts = previous_attempts + 1

        if not retryable or attempts >= max_attempts:
            return RetryDecision(attempts=attempts, retry=False)

        delay = self.backoff(attempts)
        return RetryDecision(
            attempts=attempts,
            retry=True,
            next_retry_at=now + dt.timedelta(seconds=delay),
            delay_seconds=delay,
        )
