"""Bounded retry with exponential backoff."""

from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay_seconds: float) -> float:
    """Delay after a failed `attempt` (1-based): base, 2*base, 4*base, ..."""
    return base_delay_seconds * (2 ** (attempt - 1))


def run_with_retry(
    operation: Callable[[], T],
    *,
    should_retry: Callable[[BaseException], bool],
    max_attempts: int = 3,
    base_delay_seconds: float = 2.0,
    sleep_fn: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, float, Exception], None]] = None,
) -> T:
    """Run `operation` up to `max_attempts` times.

    Errors rejected by `should_retry` and the error of the final attempt are
    re-raised unchanged. No sleep happens after the final attempt.
    """
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as exc:
            if attempt >= max_attempts or not should_retry(exc):
                raise
            delay = backoff_delay(attempt, base_delay_seconds)
            if on_retry is not None:
                on_retry(attempt, delay, exc)
            sleep_fn(delay)
            attempt += 1
