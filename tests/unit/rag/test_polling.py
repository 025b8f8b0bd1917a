"""Tests for the bounded poll helper, driven by a fake clock."""

from __future__ import annotations

import pytest

from quarry.errors import PollTimeout
from quarry.rag.polling import poll_until


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _statuses(*values):
    it = iter(values)
    return lambda: next(it)


def test_returns_first_done_value_without_sleeping():
    clock = FakeClock()
    result = poll_until(
        _statuses("completed"), lambda s: s == "completed", timeout=10, sleep=clock.sleep, clock=clock
    )
    assert result == "completed"
    assert clock.sleeps == []


def test_backoff_grows_and_is_capped():
    clock = FakeClock()
    fetch = _statuses("queued", "in_progress", "in_progress", "in_progress", "completed")

    poll_until(
        fetch,
        lambda s: s == "completed",
        timeout=100,
        interval=1.0,
        backoff=2.0,
        max_interval=3.0,
        sleep=clock.sleep,
        clock=clock,
    )

    assert clock.sleeps == [1.0, 2.0, 3.0, 3.0]


def test_timeout_raises_with_last_value():
    clock = FakeClock()

    with pytest.raises(PollTimeout) as info:
        poll_until(
            lambda: "in_progress",
            lambda s: s == "completed",
            timeout=5,
            interval=2.0,
            backoff=1.0,
            sleep=clock.sleep,
            clock=clock,
        )

    assert info.value.last == "in_progress"
    assert clock.now == pytest.approx(5.0)  # last sleep shortened to the deadline


def test_non_positive_timeout_rejected():
    with pytest.raises(ValueError):
        poll_until(lambda: 1, lambda v: True, timeout=0)
