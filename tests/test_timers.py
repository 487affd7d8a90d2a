from __future__ import annotations

import threading

import pytest

from timers import ThreadingScheduler, backoff_delay


@pytest.mark.parametrize("retry_count, expected", [(0, 2.0), (1, 4.0), (2, 8.0), (3, 16.0)])
def test_backoff_doubles(retry_count: int, expected: float) -> None:
    assert backoff_delay(2.0, retry_count) == expected


def test_scheduler_runs_callback() -> None:
    fired = threading.Event()
    ThreadingScheduler().call_later(0.01, fired.set)
    assert fired.wait(timeout=2.0)


def test_cancelled_timer_does_not_run() -> None:
    fired = threading.Event()
    timer = ThreadingScheduler().call_later(0.2, fired.set)
    timer.cancel()
    assert not fired.wait(timeout=0.4)
