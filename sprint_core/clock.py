"""Millisecond clock helpers shared by the timing modules."""

import time


def monotonic_ms() -> float:
    """Local monotonic time in milliseconds."""
    return time.monotonic() * 1000.0


def wall_ms() -> float:
    """Wall-clock (epoch) time in milliseconds."""
    return time.time() * 1000.0


def perf_ms() -> float:
    """High resolution timer in milliseconds, for measuring short durations."""
    return time.perf_counter() * 1000.0


def sleep_ms(duration_ms: float):
    """Block the calling thread for duration_ms."""
    if duration_ms > 0:
        time.sleep(duration_ms / 1000.0)
