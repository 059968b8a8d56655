"""Exponential backoff with jitter for transient replication errors."""

from __future__ import annotations

from dataclasses import dataclass, field
import random
import time
from typing import Callable, TypeVar

from core.errors import TransientReplicationError
from core.logging import logger as LOGGER


T = TypeVar("T")


class BackoffStrategy:
    """Exponential backoff with jitter for retry operations."""

    def __init__(
        self,
        initial_delay_s: float = 1.0,
        max_delay_s: float = 30.0,
        multiplier: float = 2.0,
        jitter_factor: float = 0.1,
    ) -> None:
        self.initial_delay_s = max(0.0, float(initial_delay_s))
        self.max_delay_s = max(self.initial_delay_s, float(max_delay_s))
        self.multiplier = max(1.0, float(multiplier))
        self.jitter_factor = min(max(0.0, float(jitter_factor)), 1.0)

    def get_delay(self, attempt: int) -> float:
        """Get delay in seconds before retry number ``attempt`` (0-based)."""
        delay = self.initial_delay_s * (self.multiplier ** attempt)
        delay = min(delay, self.max_delay_s)
        jitter_range = delay * self.jitter_factor
        delay += random.uniform(-jitter_range, jitter_range)
        return max(0.0, delay)

    def get_all_delays(self, max_attempts: int) -> list[float]:
        return [self.get_delay(i) for i in range(max(0, max_attempts - 1))]


@dataclass(frozen=True)
class RetryPolicy:
    """How many attempts to make and how long to wait between them."""

    max_attempts: int = 3
    backoff: BackoffStrategy = field(default_factory=BackoffStrategy)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            object.__setattr__(self, "max_attempts", 1)


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    describe: str,
    on_retry: Callable[[int, Exception, float], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    deadline: float | None = None,
) -> tuple[T, int]:
    """Call ``fn`` retrying only transient replication errors.

    Permanent errors and anything unclassified propagate on the first attempt.
    When ``deadline`` (a ``time.monotonic`` value) would be passed by the next
    backoff delay the last transient error is raised instead of sleeping.

    Returns:
        The function result and the number of attempts used.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(), attempt
        except TransientReplicationError as exc:
            if attempt >= policy.max_attempts:
                LOGGER.warning(
                    "[Retry] %s: giving up after %d attempt(s): %s",
                    describe,
                    attempt,
                    exc,
                )
                raise
            delay = policy.backoff.get_delay(attempt - 1)
            if deadline is not None and time.monotonic() + delay >= deadline:
                LOGGER.warning(
                    "[Retry] %s: no time left for retry %d (delay %.1fs): %s",
                    describe,
                    attempt + 1,
                    delay,
                    exc,
                )
                raise
            LOGGER.info(
                "[Retry] %s: attempt %d/%d failed (%s); retrying in %.1fs",
                describe,
                attempt,
                policy.max_attempts,
                exc.code,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            sleep(delay)
