"""
Motion Trigger Detector.

Frame-differencing tripwire over a vertical strip at the horizontal center of
each frame. Per frame:
1. Cut a 20px strip at x = (width - 20) // 2
2. Convert to luminance (0.299R + 0.587G + 0.114B)
3. Mean absolute difference against the previous strip
4. Armed, delta > sensitivity and outside the cooldown -> trigger

The first frame after arming (or after a resize) only primes the previous
strip. Cooldown is measured from the last accepted trigger; before the first
trigger there is no cooldown.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np

from sprint_core.proto import MotionMetadata
from sprint_core.capture import CaptureSource, Frame, Subscription
from sprint_core.metrics import get_metrics
from sprint_core.clock import perf_ms

logger = logging.getLogger(__name__)

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])


@dataclass
class MotionTriggerConfig:
    """
    Configuration for the motion tripwire.

    Attributes:
        sensitivity: Mean luminance delta (0-255) above which motion triggers
        strip_width: Width of the analysed center strip (px)
        cooldown_ms: Minimum gap between accepted triggers (ms)
    """

    sensitivity: float = 25.0
    strip_width: int = 20
    cooldown_ms: float = 2000.0

    def __post_init__(self):
        """Validate configuration."""
        assert 0 <= self.sensitivity <= 255, "sensitivity must be in [0, 255]"
        assert self.strip_width > 0, "strip_width must be positive"
        assert self.cooldown_ms >= 0, "cooldown_ms must be non-negative"


@dataclass(frozen=True)
class MotionTrigger:
    """
    One accepted motion trigger.

    Attributes:
        delta: Mean luminance difference that fired the trigger
        frame_time_ms: Delivery time of the triggering frame (ms)
        metadata: Latency metadata for timestamp compensation
    """

    delta: float
    frame_time_ms: float
    metadata: MotionMetadata


def center_strip(pixels: np.ndarray, strip_width: int) -> np.ndarray:
    """
    Cut the vertical strip at the horizontal center.

    Args:
        pixels: (H, W) or (H, W, C) image
        strip_width: Strip width in pixels (clipped to the frame width)

    Returns:
        (H, w) or (H, w, C) view of the strip
    """
    width = pixels.shape[1]
    strip_width = min(strip_width, width)
    x0 = (width - strip_width) // 2
    return pixels[:, x0:x0 + strip_width]


def luminance(pixels: np.ndarray) -> np.ndarray:
    """
    Per-pixel luminance as float64.

    Single-channel images, (H, W) or (H, W, 1), are used as-is; alpha
    channels are ignored.
    """
    if pixels.ndim == 3 and pixels.shape[-1] < 3:
        pixels = pixels[..., 0]
    if pixels.ndim == 2:
        return pixels.astype(np.float64)
    return pixels[..., :3].astype(np.float64) @ LUMA_WEIGHTS


def strip_delta(current: np.ndarray, previous: np.ndarray) -> float:
    """Mean absolute luminance difference of two equally sized strips."""
    return float(np.mean(np.abs(current - previous)))


class MotionTriggerDetector:
    """
    Camera tripwire producing motion triggers.

    Usage:
        detector = MotionTriggerDetector(on_trigger=lambda t: session.trigger_gate(
            EventSource.MOTION, t.metadata))
        detector.attach(camera)
        detector.arm()
        ...
        detector.detach()
    """

    def __init__(
        self,
        config: Optional[MotionTriggerConfig] = None,
        on_trigger: Optional[Callable[[MotionTrigger], None]] = None,
        on_level: Optional[Callable[[float], None]] = None,
        timer_ms: Callable[[], float] = perf_ms,
    ):
        """
        Initialize detector.

        Args:
            config: Detector configuration (uses defaults if None)
            on_trigger: Called with each accepted MotionTrigger
            on_level: Called with every computed delta (motion meter)
            timer_ms: High-resolution timer for processing latency (ms)
        """
        self.config = config or MotionTriggerConfig()
        self.on_trigger = on_trigger
        self.on_level = on_level
        self.timer_ms = timer_ms
        self.metrics = get_metrics()

        self._lock = threading.Lock()
        self._armed = False
        self._previous_strip: Optional[np.ndarray] = None
        self._previous_shape: Optional[Tuple[int, ...]] = None
        self._last_trigger_ms: Optional[float] = None
        self._subscription: Optional[Subscription] = None

    # ------------------------------------------------------------------
    # Arming
    # ------------------------------------------------------------------

    @property
    def is_armed(self) -> bool:
        return self._armed

    @property
    def last_trigger_ms(self) -> Optional[float]:
        """Frame time of the last accepted trigger, None before the first."""
        return self._last_trigger_ms

    def arm(self):
        """Start accepting triggers."""
        with self._lock:
            self._armed = True
            self._previous_strip = None
            self._previous_shape = None
        logger.info(f"Motion gate armed (sensitivity {self.config.sensitivity:.0f})")

    def disarm(self):
        """Stop accepting triggers; deltas are still reported to on_level."""
        with self._lock:
            self._armed = False
        logger.info("Motion gate disarmed")

    def set_sensitivity(self, sensitivity: float):
        """
        Change the trigger threshold.

        Raises:
            ValueError: If sensitivity is outside [0, 255]
        """
        if not 0 <= sensitivity <= 255:
            raise ValueError(f"sensitivity must be in [0, 255], got {sensitivity}")
        with self._lock:
            self.config.sensitivity = float(sensitivity)

    # ------------------------------------------------------------------
    # Frame processing
    # ------------------------------------------------------------------

    def attach(self, source: CaptureSource):
        """Subscribe to a capture source, replacing any previous one."""
        self.detach()
        self._subscription = source.subscribe(self.process_frame)
        logger.debug("Motion detector attached to capture source")

    def detach(self):
        """Cancel the capture subscription, if any."""
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
            logger.debug("Motion detector detached")

    def process_frame(self, frame: Frame) -> Optional[MotionTrigger]:
        """
        Analyse one frame.

        Args:
            frame: Delivered frame

        Returns:
            MotionTrigger if this frame fired, else None
        """
        started = self.timer_ms()

        current = luminance(center_strip(frame.pixels, self.config.strip_width))
        shape = frame.pixels.shape[:2]

        with self._lock:
            previous = self._previous_strip
            if self._previous_shape != shape:
                if previous is not None:
                    logger.debug(f"Frame size changed to {frame.width}x{frame.height}, "
                                 f"discarding previous strip")
                previous = None

            self._previous_strip = current
            self._previous_shape = shape

            if previous is None:
                return None

            delta = strip_delta(current, previous)
            processing_latency = self.timer_ms() - started
            self.metrics.increment('frames_processed')

            trigger = None
            if self._armed and self._accepts(delta, frame.delivered_at_ms):
                self._last_trigger_ms = frame.delivered_at_ms
                trigger = MotionTrigger(
                    delta=delta,
                    frame_time_ms=frame.delivered_at_ms,
                    metadata=MotionMetadata(
                        processing_latency=processing_latency,
                        camera_latency=frame.capture_latency_ms,
                    ),
                )

        if self.on_level is not None:
            self.on_level(delta)

        if trigger is not None:
            self.metrics.increment('motion_triggers')
            self.metrics.record_histogram('motion_processing_ms', processing_latency)
            logger.info(f"Motion trigger: delta={delta:.1f} "
                        f"(processing {processing_latency:.2f}ms)")
            if self.on_trigger is not None:
                self.on_trigger(trigger)

        return trigger

    def _accepts(self, delta: float, now_ms: float) -> bool:
        """Threshold and cooldown check (caller holds the lock)."""
        if delta <= self.config.sensitivity:
            return False
        if self._last_trigger_ms is None:
            return True
        return now_ms - self._last_trigger_ms >= self.config.cooldown_ms


def create_default_motion_detector(
    on_trigger: Optional[Callable[[MotionTrigger], None]] = None,
) -> MotionTriggerDetector:
    """
    Create a detector with the standard tripwire settings.

    Args:
        on_trigger: Trigger callback

    Returns:
        Configured MotionTriggerDetector
    """
    config = MotionTriggerConfig(
        sensitivity=25.0,
        strip_width=20,
        cooldown_ms=2000.0,
    )

    return MotionTriggerDetector(config, on_trigger=on_trigger)
