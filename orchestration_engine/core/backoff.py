# orchestration_engine/core/backoff.py
"""Bounded exponential backoff used for service restarts and certificate retries."""

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff with a delay cap and an attempt ceiling.

    With the defaults the delays are 10s, 30s, 90s, 270s, 300s ...
    and the caller gives up after max_attempts failed attempts.
    """

    initial_delay: float = 10.0
    multiplier: float = 3.0
    max_delay: float = 300.0
    max_attempts: int = 5

    def __post_init__(self):
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        if attempt < 1:
            return 0.0
        delay = self.initial_delay * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
