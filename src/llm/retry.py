"""Bounded retry policy for provider calls.

Retries are described as data (attempt count and backoff schedule) rather
than by a call re-invoking itself, so the bound can be audited and tested
on its own.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from src.core.config import LLMConfig
from src.core.exceptions import TransientError

logger = logging.getLogger("concord.llm.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Max attempts plus an exponential backoff schedule.

    ``schedule`` overrides the computed delays when given; the last entry is
    reused if there are more retries than entries.
    """

    max_attempts: int = 3
    backoff_seconds: float = 5.0
    max_delay_seconds: float = 60.0
    schedule: tuple[float, ...] = field(default_factory=tuple)

    @classmethod
    def from_config(cls, config: LLMConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.provider_retries + 1,
            backoff_seconds=config.provider_backoff_seconds,
            max_delay_seconds=config.max_backoff_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given zero-based failed attempt."""
        if self.schedule:
            return self.schedule[min(attempt, len(self.schedule) - 1)]
        return min(self.backoff_seconds * (2 ** attempt), self.max_delay_seconds)

    def delays(self) -> list[float]:
        return [self.delay_for(i) for i in range(max(0, self.max_attempts - 1))]


NO_RETRY = RetryPolicy(max_attempts=1)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...] = (TransientError,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "call",
) -> T:
    """Await ``fn()`` up to ``policy.max_attempts`` times.

    Only exceptions in ``retry_on`` are retried; anything else propagates
    immediately. When attempts run out the last retryable error is re-raised.
    """
    attempts = max(1, policy.max_attempts)
    last_error: Optional[BaseException] = None

    for attempt in range(attempts):
        try:
            return await fn()
        except retry_on as e:
            last_error = e
            if attempt == attempts - 1:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (%s). Waiting %.1fs before retry %d/%d",
                label, e, delay, attempt + 1, attempts - 1,
            )
            await sleep(delay)

    assert last_error is not None
    raise last_error
