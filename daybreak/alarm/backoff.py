"""Exponential backoff policy and the shared sequential retry loop."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TypeVar

from .errors import Classification, RetryExhausted, classify_error

LOGGER = logging.getLogger("daybreak.backoff")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
Classifier = Callable[[BaseException], Classification]


@dataclass(frozen=True)
class BackoffPolicy:
    """``wait(n) = min(base * 2**(n-1), max_wait)`` for a bounded number of attempts."""

    base: float = 1.0
    max_wait: float = 8.0
    max_attempts: int = 3

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base < 0 or self.max_wait < 0:
            raise ValueError("Backoff durations cannot be negative")

    def delay_for(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError("Attempt index is 1-based")
        exponent = min(attempt - 1, 62)
        return min(self.base * (2**exponent), self.max_wait)

    def delays(self) -> list[float]:
        """Waits taken between consecutive attempts when every attempt fails."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]

    def with_attempts(self, max_attempts: int) -> BackoffPolicy:
        return replace(self, max_attempts=max_attempts)


GENERATION_BACKOFF = BackoffPolicy(base=1.0, max_wait=8.0, max_attempts=3)
MANUAL_RETRY_BACKOFF = BackoffPolicy(base=1.0, max_wait=8.0, max_attempts=5)
PLAYBACK_BACKOFF = BackoffPolicy(base=1.0, max_wait=8.0, max_attempts=3)


@dataclass(frozen=True)
class RetryAttempt:
    index: int
    previous: Classification | None = None
    elapsed_backoff: float = 0.0


async def run_with_retry(
    operation: Callable[[RetryAttempt], Awaitable[T]],
    *,
    policy: BackoffPolicy,
    label: str,
    classify: Classifier = classify_error,
    sleep: Sleep = asyncio.sleep,
    logger: logging.Logger | None = None,
    on_failure: Callable[[RetryAttempt, BaseException, Classification], None] | None = None,
) -> T:
    """Run ``operation`` until it succeeds, fails terminally, or runs out of attempts.

    Attempts never overlap. A wait only happens between two attempts, so a
    run of ``max_attempts`` failures sleeps ``max_attempts - 1`` times.
    Cancellation propagates out of both the operation and the sleep.
    """

    log = logger or LOGGER
    attempt = RetryAttempt(index=1)
    while True:
        try:
            return await operation(attempt)
        except Exception as exc:
            verdict = classify(exc)
            if on_failure is not None:
                on_failure(attempt, exc, verdict)
            if not verdict.retryable or attempt.index >= policy.max_attempts:
                log.error(
                    "%s failed on attempt %d/%d (%s, retryable=%s): %s",
                    label,
                    attempt.index,
                    policy.max_attempts,
                    verdict.category,
                    verdict.retryable,
                    exc,
                )
                raise RetryExhausted(label, exc, verdict, attempt.index) from exc
            delay = policy.delay_for(attempt.index)
            log.warning(
                "%s attempt %d/%d failed (%s): %s; retrying in %.1fs",
                label,
                attempt.index,
                policy.max_attempts,
                verdict.category,
                exc,
                delay,
            )
            await sleep(delay)
            attempt = RetryAttempt(
                index=attempt.index + 1,
                previous=verdict,
                elapsed_backoff=attempt.elapsed_backoff + delay,
            )
