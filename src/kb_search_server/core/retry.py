"""
Provider Retry Policy

Bounded exponential backoff with jitter for transient embedding and
index-query failures. Nothing else in the service retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from .errors import is_transient
from ..config import settings

logger = logging.getLogger("kb.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    async def call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` until it succeeds, raises a non-transient error,
        or the attempt budget is spent. The final error is re-raised as-is.
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(max(1, self.attempts)),
            wait=wait_exponential_jitter(
                initial=self.base_delay,
                max=self.max_delay,
                jitter=self.base_delay,
            ),
            before_sleep=lambda state: logger.warning(
                "%s failed (%s), retry %d/%d",
                operation,
                state.outcome.exception(),
                state.attempt_number,
                self.attempts,
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await fn()
        raise AssertionError("unreachable")  # pragma: no cover


NO_RETRY = RetryPolicy(attempts=1, base_delay=0.0, max_delay=0.0)
