"""Timer scheduling for backoff delays."""

from __future__ import annotations

import threading
from typing import Callable


class ThreadingScheduler:
    """Runs callbacks on daemon ``threading.Timer`` threads."""

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(max(0.0, delay_s), callback)
        timer.daemon = True
        timer.start()
        return timer


def backoff_delay(base_delay_s: float, retry_count: int) -> float:
    return base_delay_s * (2 ** retry_count)
