"""
Retry/backoff policy for failed job attempts.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from orchestrator.config.settings import Settings

# 2**62 seconds already exceeds any sane ceiling
_MAX_EXPONENT = 62


@dataclass(frozen=True)
class RetryPolicy:
    """
    Capped exponential backoff: ``delay = min(base * 2**attempts, max)``.

    The delay depends on ``attempts`` alone, so the policy carries no state
    and two workers always agree on a job's next eligible time.
    """

    base_delay_s: float = 30.0
    max_delay_s: float = 3600.0

    def __post_init__(self) -> None:
        if self.base_delay_s < 0:
            raise ValueError("base_delay_s must not be negative")
        if self.max_delay_s < self.base_delay_s:
            raise ValueError("max_delay_s must be >= base_delay_s")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay_s=settings.job_backoff_base_s,
            max_delay_s=settings.job_max_backoff_s,
        )

    def delay(self, attempts: int) -> timedelta:
        """Delay before the next attempt, given the attempts made so far."""
        if attempts < 0:
            raise ValueError(f"attempts must not be negative, got {attempts}")
        seconds = self.base_delay_s * (2 ** min(attempts, _MAX_EXPONENT))
        return timedelta(seconds=min(seconds, self.max_delay_s))

    def next_run_at(self, attempts: int, now: datetime) -> datetime:
        return now + self.delay(attempts)

    @staticmethod
    def is_exhausted(attempts: int, max_attempts: int) -> bool:
        """True once a job has used every attempt it is allowed."""
        return attempts >= max_attempts
