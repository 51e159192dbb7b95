"""
Capture Source Interface.

Frames arrive through a delivery callback, the way a camera driver or a video
element hands them out. Each subscription is an explicit cancellation token:
cancel() stops delivery to that callback and nothing else.

Concrete camera drivers live outside this package; PushFrameSource lets any
frame producer (camera loop, video file reader, tests) feed the pipeline.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from sprint_core.metrics import get_metrics
from sprint_core.clock import monotonic_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    """
    One delivered video frame.

    Attributes:
        pixels: Image array, (H, W) single-channel or (H, W, C) with C >= 3
            in RGB(A) order
        delivered_at_ms: Local monotonic time the frame was delivered (ms)
        capture_time_ms: Hardware capture time on the same clock (ms), None
            when the source exposes no capture timestamp
    """

    pixels: np.ndarray
    delivered_at_ms: float
    capture_time_ms: Optional[float] = None

    @property
    def height(self) -> int:
        """Frame height in pixels."""
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        """Frame width in pixels."""
        return int(self.pixels.shape[1])

    @property
    def capture_latency_ms(self) -> Optional[float]:
        """Delivery minus capture time, None without a capture timestamp."""
        if self.capture_time_ms is None:
            return None
        return self.delivered_at_ms - self.capture_time_ms


FrameCallback = Callable[[Frame], None]


class Subscription:
    """Cancellation token for one frame callback."""

    def __init__(self, cancel_fn: Callable[[], None]):
        self._cancel_fn = cancel_fn
        self._cancelled = False
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        """Stop delivery. Safe to call more than once."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
        self._cancel_fn()


class CaptureSource(ABC):
    """Anything that delivers frames to callbacks."""

    @abstractmethod
    def subscribe(self, callback: FrameCallback) -> Subscription:
        """
        Register a frame callback.

        Args:
            callback: Called once per delivered frame

        Returns:
            Subscription whose cancel() stops delivery
        """


class PushFrameSource(CaptureSource):
    """
    Capture source driven by the caller.

    Usage:
        source = PushFrameSource()
        sub = source.subscribe(detector.process_frame)
        source.push(pixels)                       # no capture timestamp
        source.push(pixels, capture_time_ms=t)    # with hardware timestamp
        sub.cancel()
    """

    def __init__(self, clock_ms: Optional[Callable[[], float]] = None):
        """
        Initialize source.

        Args:
            clock_ms: Local monotonic clock used to stamp delivery (ms)
        """
        self.clock_ms = clock_ms or monotonic_ms
        self.metrics = get_metrics()
        self._lock = threading.Lock()
        self._callbacks: List[FrameCallback] = []

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def subscribe(self, callback: FrameCallback) -> Subscription:
        with self._lock:
            self._callbacks.append(callback)

        def _remove():
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return Subscription(_remove)

    def push(
        self,
        pixels: np.ndarray,
        capture_time_ms: Optional[float] = None,
        delivered_at_ms: Optional[float] = None,
    ) -> Frame:
        """
        Deliver a frame to every subscriber.

        A failing callback is logged and counted; the others still run.

        Args:
            pixels: Image array
            capture_time_ms: Hardware capture time (ms), if known
            delivered_at_ms: Delivery time (ms), default now

        Returns:
            The delivered Frame
        """
        frame = Frame(
            pixels=pixels,
            delivered_at_ms=self.clock_ms() if delivered_at_ms is None else delivered_at_ms,
            capture_time_ms=capture_time_ms,
        )

        with self._lock:
            callbacks = list(self._callbacks)

        for callback in callbacks:
            try:
                callback(frame)
            except Exception as e:
                self.metrics.increment_drop('frame_error')
                logger.error(f"Frame callback failed: {e}", exc_info=True)

        return frame
