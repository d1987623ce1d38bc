"""Backoff and circuit-breaker policy for failing scheduled jobs.

Pure functions only: no database, no clock. The job store feeds in the new
consecutive-failure count and applies the decision.
"""

from dataclasses import dataclass
from datetime import timedelta

DEFAULT_BASE_DELAY = timedelta(minutes=5)
DEFAULT_CAP_DELAY = timedelta(minutes=60)
DEFAULT_PAUSE_THRESHOLD = 3
BACKOFF_FACTOR = 3


@dataclass(frozen=True)
class FailureDecision:
    pause: bool
    retry_delay: timedelta


def retry_delay(
    consecutive_failures: int,
    base_delay: timedelta = DEFAULT_BASE_DELAY,
    cap_delay: timedelta = DEFAULT_CAP_DELAY,
) -> timedelta:
    """min(base * 3^(n-1), cap) for the n-th consecutive failure."""
    if consecutive_failures < 1:
        raise ValueError(f"consecutive_failures must be >= 1, got {consecutive_failures}")
    # Exponent capped so the intermediate value stays a sane float
    exponent = min(consecutive_failures - 1, 40)
    seconds = base_delay.total_seconds() * (BACKOFF_FACTOR ** exponent)
    return timedelta(seconds=min(seconds, cap_delay.total_seconds()))


@dataclass(frozen=True)
class FailurePolicy:
    """Exponential backoff with a ceiling, plus a pause threshold (0 = never pause)."""
    base_delay: timedelta = DEFAULT_BASE_DELAY
    cap_delay: timedelta = DEFAULT_CAP_DELAY
    pause_threshold: int = DEFAULT_PAUSE_THRESHOLD

    def evaluate(self, consecutive_failures: int) -> FailureDecision:
        pause = self.pause_threshold > 0 and consecutive_failures >= self.pause_threshold
        return FailureDecision(
            pause=pause,
            retry_delay=retry_delay(consecutive_failures, self.base_delay, self.cap_delay),
        )

    @classmethod
    def from_config(cls, config) -> "FailurePolicy":
        """Build from a FailurePolicyConfig section."""
        return cls(
            base_delay=timedelta(minutes=config.base_delay_minutes),
            cap_delay=timedelta(minutes=config.cap_delay_minutes),
            pause_threshold=config.pause_threshold,
        )


def evaluate(
    consecutive_failures: int,
    base_delay: timedelta = DEFAULT_BASE_DELAY,
    cap_delay: timedelta = DEFAULT_CAP_DELAY,
    threshold: int = DEFAULT_PAUSE_THRESHOLD,
) -> FailureDecision:
    """Decision for the n-th consecutive failure (defaults: base 5 min, cap 60 min, pause at 3)."""
    return FailurePolicy(base_delay, cap_delay, threshold).evaluate(consecutive_failures)
