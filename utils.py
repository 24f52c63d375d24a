# SPDX-License-Identifier: GPL-3.0-or-later
import math
import time
from typing import Optional, Tuple

# ---- Timing helpers -------------------------------------------------

class RecClock:
    """Keeps a relative monotonic clock anchored at start()."""
    def __init__(self) -> None:
        self._t0: Optional[float] = None

    def start(self) -> None:
        self._t0 = time.perf_counter()

    def now_rel(self) -> float:
        if self._t0 is None:
            self.start()
        return time.perf_counter() - (self._t0 or time.perf_counter())


def precise_sleep(seconds: float) -> None:
    """Sleep on the monotonic clock, tolerant of early wakeups."""
    deadline = time.monotonic() + max(0.0, seconds)
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return
        time.sleep(remaining)

# ---- Geometry helpers -----------------------------------------------

def distance(a: Tuple[int, int], b: Tuple[int, int]) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])
