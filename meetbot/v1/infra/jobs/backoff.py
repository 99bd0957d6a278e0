"""
Retry/backoff policy for failed job attempts.
"""

import random
from dataclasses import dataclass, field

from meetbot.config.settings import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with bounded jitter.

    next_delay(n) = min(base * 2^(n-1), max) scaled by a factor drawn from
    [1 - jitter, 1 + jitter], never above max_delay_ms.
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 300_000
    jitter: float = 0.2
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < self.base_delay_ms:
            raise ValueError("require 0 <= base_delay_ms <= max_delay_ms")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")

    def base_delay(self, attempts: int) -> int:
        """Delay before jitter for the given number of failed attempts."""
        if attempts < 1:
            return 0
        # Cap the exponent so huge attempt counts don't build giant ints
        exponent = min(attempts - 1, 62)
        return min(self.base_delay_ms * (2**exponent), self.max_delay_ms)

    def next_delay(self, attempts: int) -> int:
        """Milliseconds to wait before the next attempt."""
        delay = self.base_delay(attempts)
        if self.jitter:
            delay = delay * (1 + self.rng.uniform(-self.jitter, self.jitter))
        return int(max(0, min(delay, self.max_delay_ms)))


class RetryPolicies:
    """Per job type retry policies with a default fallback."""

    def __init__(
        self,
        default: RetryPolicy | None = None,
        overrides: dict[str, RetryPolicy] | None = None,
    ):
        self.default = default or RetryPolicy()
        self._overrides = dict(overrides or {})

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicies":
        default = RetryPolicy(
            max_attempts=settings.job_max_attempts,
            base_delay_ms=settings.job_base_delay_ms,
            max_delay_ms=settings.job_max_delay_ms,
            jitter=settings.job_backoff_jitter,
        )
        overrides = {
            job_type: RetryPolicy(
                max_attempts=max_attempts,
                base_delay_ms=default.base_delay_ms,
                max_delay_ms=default.max_delay_ms,
                jitter=default.jitter,
                rng=default.rng,
            )
            for job_type, max_attempts in settings.job_max_attempts_by_type.items()
        }
        return cls(default, overrides)

    def set(self, job_type: str, policy: RetryPolicy) -> None:
        self._overrides[job_type] = policy

    def for_type(self, job_type: str) -> RetryPolicy:
        return self._overrides.get(job_type, self.default)
