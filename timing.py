# =========  timing.py  =========
"""
Wall-clock helpers.
Everything that ages or stamps data goes through one of these so tests
can swap in a fake clock (any zero-argument callable returning epoch
seconds).
"""

import time
from typing import Callable, Optional

Clock = Callable[[], float]


def wall_clock() -> float:
    """Seconds since the Unix epoch (the relay's notion of "now")."""
    return time.time()


def wall_clock_ms(clock: Optional[Clock] = None) -> float:
    return (clock or wall_clock)() * 1000.0


def age_sec(since: float, clock: Optional[Clock] = None) -> float:
    """
    Seconds elapsed since *since* (epoch seconds).
    Never negative, even if the clock was stepped backward.
    """
    return max(0.0, (clock or wall_clock)() - since)


def fmt_age(secs: float) -> str:
    """Whole-second age as used in staleness warnings."""
    return f"{round(secs)} seconds old"
