"""Bounded poll-with-backoff helper."""

from __future__ import annotations

import time
from typing import Callable, TypeVar

from quarry.errors import PollTimeout

T = TypeVar("T")


def poll_until(
    fetch: Callable[[], T],
    done: Callable[[T], bool],
    *,
    timeout: float,
    interval: float = 1.0,
    backoff: float = 1.5,
    max_interval: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call *fetch* until *done* holds for its value, or *timeout* seconds pass.

    The first fetch happens immediately. Delays start at *interval*, grow by
    *backoff* and are capped at *max_interval*; the final sleep is shortened
    so the loop never overshoots the deadline.

    Returns:
        The first fetched value for which ``done(value)`` is true.

    Raises:
        PollTimeout: Deadline reached; ``.last`` holds the last fetched value.
    """
    if timeout <= 0:
        raise ValueError("timeout must be > 0")

    deadline = clock() + timeout
    delay = interval
    while True:
        value = fetch()
        if done(value):
            return value
        remaining = deadline - clock()
        if remaining <= 0:
            raise PollTimeout(timeout, last=value)
        sleep(min(delay, remaining))
        delay = min(delay * backoff, max_interval)
