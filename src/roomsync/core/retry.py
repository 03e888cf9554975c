"""Retry policy shared by the sync, decryption and send pipelines."""

from __future__ import annotations

from dataclasses import dataclass

from roomsync.core.settings import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry schedule.

    Attributes:
        max_attempts: Total number of attempts, never exceeded.
        delay_seconds: Pause inserted before the second attempt.
        backoff_factor: Multiplier applied to the pause for each later attempt.
        attempt_timeout_seconds: Upper bound on a single attempt.
    """

    max_attempts: int = 3
    delay_seconds: float = 2.0
    backoff_factor: float = 1.0
    attempt_timeout_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0 or self.attempt_timeout_seconds <= 0:
            raise ValueError("delays must be non-negative and timeouts positive")

    def delay_after(self, attempt: int) -> float:
        """Return the pause to take after ``attempt`` (1-based), 0 after the last one."""
        if attempt >= self.max_attempts:
            return 0.0
        return self.delay_seconds * (self.backoff_factor ** (attempt - 1))

    @classmethod
    def for_key_resync(cls, config: Settings) -> RetryPolicy:
        return cls(
            max_attempts=config.key_resync_attempts,
            delay_seconds=config.key_resync_delay_seconds,
            attempt_timeout_seconds=config.key_resync_timeout_seconds,
        )
