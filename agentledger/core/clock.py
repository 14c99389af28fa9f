# agentledger/core/clock.py
import time
from typing import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    """Wall-clock milliseconds since the Unix epoch."""
    return time.time_ns() // 1_000_000
