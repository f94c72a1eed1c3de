"""Bounded polling helper.

Health waits, database readiness checks, DNS propagation checks and firewall
rule cleanup all poll an external tool a limited number of times through
:func:`retry_until`.
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryOutcome(Generic[T]):
    """Result of a bounded poll."""

    succeeded: bool
    attempts: int
    value: T | None = None
    error: BaseException | None = None


def retry_until(
    operation: Callable[[], T],
    predicate: Callable[[T], bool] = bool,
    *,
    attempts: int,
    interval: float,
    backoff: float = 1.0,
    max_interval: float | None = None,
    retry_on: tuple[type[BaseException], ...] = (),
    sleep: Callable[[float], None] = time.sleep,
) -> RetryOutcome[T]:
    """Call *operation* until *predicate* accepts its result or *attempts* run out.

    Exceptions listed in *retry_on* count as a failed attempt; anything else
    propagates. The delay starts at *interval* and is multiplied by *backoff*
    after every failed attempt, capped at *max_interval* when given. No sleep
    happens after the final attempt.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1.")

    delay = interval
    last_value: T | None = None
    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            last_value = operation()
            last_error = None
        except retry_on as exc:
            last_error = exc
        else:
            if predicate(last_value):
                return RetryOutcome(True, attempt, last_value, None)
        if attempt < attempts:
            sleep(delay)
            delay = delay * backoff
            if max_interval is not None:
                delay = min(delay, max_interval)
    return RetryOutcome(False, attempts, last_value, last_error)


__all__ = ["RetryOutcome", "retry_until"]
