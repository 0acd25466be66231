"""
Retry/Backoff Policy

Pure decision function mapping (retry count, failure kind) to the next
eligible attempt or to exhaustion. Holds no state besides its configuration
and random source.
"""

import random
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Optional

from stellarrec.domain.submission import FailureKind


class RetryAction(str, Enum):
    RETRY = "retry"
    EXHAUST = "exhaust"


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a submission after a failed attempt."""
    action: RetryAction
    delay: timedelta = timedelta(0)
    reason: Optional[str] = None

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.RETRY


@dataclass
class RetryPolicy:
    """
    Exponential backoff with jitter.

    delay = min(cap, base * 2^retry_count * (1 + U(-jitter, +jitter)))

    With jitter below 1/3 successive delays strictly increase until the cap
    is reached, since base * 2^n * (1 + j) < base * 2^(n+1) * (1 - j).
    """
    base_delay_seconds: float = 60.0
    max_delay_seconds: float = 6 * 60 * 60
    jitter_ratio: float = 0.1
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_settings(cls, settings, rng: Optional[random.Random] = None) -> "RetryPolicy":
        return cls(
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            jitter_ratio=settings.retry_jitter_ratio,
            rng=rng or random.Random(),
        )

    def backoff_seconds(self, retry_count: int) -> float:
        """Jittered, capped delay before attempt ``retry_count + 1``."""
        raw = self.base_delay_seconds * (2 ** max(0, retry_count))
        if raw >= self.max_delay_seconds:
            return self.max_delay_seconds
        jitter = self.rng.uniform(-self.jitter_ratio, self.jitter_ratio)
        return min(self.max_delay_seconds, raw * (1 + jitter))

    def next(
        self,
        retry_count: int,
        failure_kind: FailureKind,
        max_retries: int,
    ) -> RetryDecision:
        """Decide whether a failed attempt is retried or exhausts the submission."""
        if FailureKind(failure_kind) == FailureKind.PERMANENT:
            return RetryDecision(RetryAction.EXHAUST, reason="permanent_failure")

        if retry_count >= max_retries:
            return RetryDecision(RetryAction.EXHAUST, reason="max_retries_exceeded")

        return RetryDecision(
            RetryAction.RETRY,
            delay=timedelta(seconds=self.backoff_seconds(retry_count)),
        )
