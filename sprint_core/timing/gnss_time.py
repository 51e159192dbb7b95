"""
GNSS Time Tracker.

Alternative reference clock for devices with a GNSS receiver. Each position
fix carries a satellite-disciplined timestamp; pairing it with the local time
at delivery gives an offset sample.

Keeps the last 10 samples. The reported offset is the mean over the window
(stable against single late deliveries); the reported accuracy is that of the
best fix in the window (lowest accuracy value wins).
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

from sprint_core.clock import wall_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GnssTimeSample:
    """
    One GNSS timestamp paired with local time.

    Attributes:
        gnss_timestamp: Timestamp of the fix (ms)
        local_timestamp: Local clock at delivery (ms)
        accuracy_m: Reported position accuracy (m, lower is better)
    """

    gnss_timestamp: float
    local_timestamp: float
    accuracy_m: float

    @property
    def offset(self) -> float:
        """GNSS minus local time (ms)."""
        return self.gnss_timestamp - self.local_timestamp


@dataclass(frozen=True)
class GnssTimeState:
    """
    Read-only view of the tracker.

    Attributes:
        is_available: A GNSS time source exists
        is_active: Currently receiving fixes
        offset_ms: Mean offset over the window (ms)
        accuracy_m: Best accuracy in the window (m)
        last_update: Local time of the last fix (ms), None before the first
        error: Last error message, None when healthy
        num_samples: Samples in the window
    """

    is_available: bool = False
    is_active: bool = False
    offset_ms: float = 0.0
    accuracy_m: float = 0.0
    last_update: Optional[float] = None
    error: Optional[str] = None
    num_samples: int = 0


class GnssTimeTracker:
    """
    Rolling GNSS time offset.

    Usage:
        tracker = GnssTimeTracker()
        tracker.start()
        tracker.add_fix(gnss_timestamp_ms, accuracy_m)   # from the receiver
        unified = tracker.now_ms()
    """

    WINDOW = 10

    def __init__(self, clock_ms: Optional[Callable[[], float]] = None):
        """
        Initialize tracker.

        Args:
            clock_ms: Local clock paired with each fix (default: wall clock)
        """
        self.clock_ms = clock_ms or wall_ms
        self._lock = threading.Lock()
        self._samples: Deque[GnssTimeSample] = deque(maxlen=self.WINDOW)
        self._state = GnssTimeState()
        self._watching = False

    @property
    def state(self) -> GnssTimeState:
        with self._lock:
            return self._state

    def start(self):
        """Begin accepting fixes; clears the previous window."""
        with self._lock:
            if self._watching:
                logger.debug("GNSS time already watching")
                return
            self._watching = True
            self._samples.clear()
            self._state = GnssTimeState(is_available=True)
        logger.info("GNSS time sync started")

    def stop(self):
        """Stop accepting fixes; the last offset stays readable."""
        with self._lock:
            self._watching = False
            self._state = _replace_state(self._state, is_active=False)
        logger.info("GNSS time sync stopped")

    def add_fix(self, gnss_timestamp_ms: float, accuracy_m: float,
                local_timestamp_ms: Optional[float] = None) -> Optional[GnssTimeState]:
        """
        Record one fix.

        Args:
            gnss_timestamp_ms: Timestamp of the fix (ms)
            accuracy_m: Position accuracy (m)
            local_timestamp_ms: Local time at delivery, default now

        Returns:
            Updated state, None if the tracker is not started
        """
        if local_timestamp_ms is None:
            local_timestamp_ms = self.clock_ms()

        with self._lock:
            if not self._watching:
                return None

            self._samples.append(GnssTimeSample(
                gnss_timestamp=gnss_timestamp_ms,
                local_timestamp=local_timestamp_ms,
                accuracy_m=accuracy_m,
            ))

            best = min(self._samples, key=lambda s: s.accuracy_m)
            mean_offset = sum(s.offset for s in self._samples) / len(self._samples)

            self._state = GnssTimeState(
                is_available=True,
                is_active=True,
                offset_ms=mean_offset,
                accuracy_m=best.accuracy_m,
                last_update=local_timestamp_ms,
                error=None,
                num_samples=len(self._samples),
            )
            state = self._state

        logger.debug(f"GNSS offset {mean_offset:.1f}ms, accuracy {accuracy_m:.1f}m, "
                     f"samples {state.num_samples}")
        return state

    def report_error(self, message: str):
        """Record a receiver error (permission, no fix, timeout)."""
        with self._lock:
            self._state = _replace_state(self._state, is_active=False, error=message)
        logger.warning(f"GNSS time: {message}")

    def now_ms(self) -> float:
        """Local clock corrected by the GNSS offset (ms)."""
        return self.clock_ms() + self.state.offset_ms


def _replace_state(state: GnssTimeState, **changes) -> GnssTimeState:
    """Copy of state with the given fields changed."""
    values = dict(state.__dict__)
    values.update(changes)
    return GnssTimeState(**values)
