from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import PassCancelled

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff policy shared by every external client.

    `max_attempts` includes the first call. The n-th failure waits
    `base_delay_seconds * 2**(n-1)`, capped at `max_delay_seconds`; a server
    supplied wait (Retry-After, rate-limit reset) raises that floor up to
    `retry_after_cap_seconds` (0 means uncapped). `jitter_ratio` spreads the
    final delay by +/- that fraction.
    """

    max_attempts: int = 4
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 20.0
    jitter_ratio: float = 0.25
    retry_after_cap_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0 and 1")
        if self.retry_after_cap_seconds < 0:
            raise ValueError("retry_after_cap_seconds must be >= 0")

    def backoff(self, failure_attempt: int) -> float:
        steps = max(0, int(failure_attempt) - 1)
        return min(float(self.max_delay_seconds), float(self.base_delay_seconds) * (2**steps))

    def server_wait(self, value: float | None) -> float | None:
        if value is None:
            return None
        try:
            seconds = float(value)
        except (TypeError, ValueError):
            return None
        if seconds < 0:
            return None
        if self.retry_after_cap_seconds > 0:
            return min(seconds, float(self.retry_after_cap_seconds))
        return seconds

    def jittered(self, delay: float) -> float:
        if delay <= 0 or self.jitter_ratio <= 0:
            return max(0.0, float(delay))
        spread = random.uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(0.0, float(delay) * (1.0 + spread))


@dataclass(frozen=True)
class RetryEvent:
    """Emitted once per scheduled retry, before the backoff sleep."""

    operation: str
    failure_attempt: int
    next_attempt: int
    max_attempts: int

    delay_seconds: float
    retry_after_seconds: float | None
    reason: str | None

    error_type: str
    error_message: str

    context_id: str | None


# (retryable, server-requested wait in seconds, short reason tag)
IsRetryableFn = Callable[[BaseException], tuple[bool, float | None, str | None]]
OnRetryFn = Callable[[RetryEvent], None]
SleepFn = Callable[[float], None]


def call_with_retries(
    fn: Callable[[], T],
    *,
    cfg: RetryConfig,
    is_retryable: IsRetryableFn,
    operation: str,
    on_retry: OnRetryFn | None = None,
    sleep_fn: SleepFn | None = None,
    context_id: str | None = None,
) -> T:
    """
    Run fn() until it succeeds, a failure is classified as permanent, or the
    attempt budget is spent; the last exception is re-raised unchanged.

    PassCancelled always propagates immediately. A sleep_fn built with
    throttle.cancellable_sleep raises it to cut a backoff short.
    """
    op = (operation or "").strip() or "operation"
    sleep = sleep_fn or time.sleep
    attempts = int(cfg.max_attempts)

    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except PassCancelled:
            raise
        except Exception as exc:
            retryable, requested_wait, reason = is_retryable(exc)
            if not retryable or attempt >= attempts:
                raise

            wait_for = cfg.server_wait(requested_wait)
            delay = cfg.backoff(attempt)
            if wait_for is not None and wait_for > delay:
                delay = wait_for
            delay = cfg.jittered(delay)

            if on_retry is not None:
                on_retry(
                    RetryEvent(
                        operation=op,
                        failure_attempt=attempt,
                        next_attempt=attempt + 1,
                        max_attempts=attempts,
                        delay_seconds=delay,
                        retry_after_seconds=wait_for,
                        reason=reason,
                        error_type=type(exc).__name__,
                        error_message=(str(exc) or "").strip(),
                        context_id=context_id,
                    )
                )

            if delay > 0:
                sleep(delay)
