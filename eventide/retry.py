import asyncio
import random
from collections.abc import Iterator
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Used by the command retry loop (with jitter, to spread out writers
    contending on the same stream) and by projection workers (without
    jitter) before an event is quarantined.

    Attributes:
        max_attempts: Total attempts, including the first one.
        initial_delay: Delay in seconds before the second attempt.
        multiplier: Factor applied to the delay after each attempt.
        max_delay: Upper bound on any single delay.
        jitter: When True each delay is drawn uniformly from [0, delay].

    Example:
        >>> policy = RetryPolicy(max_attempts=4, initial_delay=0.1)
        >>> list(policy.delays())
        [0.1, 0.2, 0.4]
    """

    max_attempts: int = 3
    initial_delay: float = 0.01
    multiplier: float = 2.0
    max_delay: float = 1.0
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    @classmethod
    def immediate(cls, max_attempts: int) -> "RetryPolicy":
        """A policy that retries without sleeping. Handy in tests."""
        return cls(max_attempts=max_attempts, initial_delay=0.0, max_delay=0.0)

    def delays(self) -> Iterator[float]:
        """Yield the delay to wait before each retry (max_attempts - 1 values)."""
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            bounded = min(delay, self.max_delay)
            yield random.uniform(0, bounded) if self.jitter else bounded
            delay *= self.multiplier

    async def sleep(self, attempt: int) -> None:
        """Sleep for the delay that precedes retry number ``attempt`` (1-based)."""
        delay = min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay = random.uniform(0, delay)
        if delay > 0:
            await asyncio.sleep(delay)
