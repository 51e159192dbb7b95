"""
Event Timestamp Compensator.

Turns "the trigger happened now" into one unified timestamp:

    unified = local_now + offset
    calibrated:
        unified -= system_lag
        motion: unified -= capture latency (hardware value, else half a frame)
                unified -= processing latency
    uncalibrated, motion:
        unified -= hardware capture latency, if known
        unified -= processing latency, if known

Capture latency is an ordered list of strategies, first valid wins: the
hardware capture timestamp always beats the half-frame estimate and the two
are never summed. Compensation happens exactly once, when the GateEvent is
created.
"""

import logging
from typing import Callable, Optional

from sprint_core.proto import CalibrationStats, EventSource, GateEvent, MotionMetadata
from sprint_core.metrics import get_metrics
from .offset_estimator import ClockOffsetEstimator
from .offset_strategies import first_valid

logger = logging.getLogger(__name__)


def hardware_capture_latency(metadata: Optional[MotionMetadata],
                             stats: CalibrationStats) -> Optional[float]:
    """Capture latency measured from the frame's hardware timestamp."""
    if metadata is None:
        return None
    return metadata.camera_latency


def half_frame_latency(metadata: Optional[MotionMetadata],
                       stats: CalibrationStats) -> Optional[float]:
    """Statistical capture latency: half a frame period."""
    if stats.frame_duration_ms > 0:
        return stats.frame_duration_ms / 2.0
    return None


# Priority order for calibrated motion events
CALIBRATED_CAPTURE_STRATEGIES = (hardware_capture_latency, half_frame_latency)

# Without calibration the frame period is unknown
UNCALIBRATED_CAPTURE_STRATEGIES = (hardware_capture_latency,)


def capture_latency(metadata: Optional[MotionMetadata], stats: CalibrationStats) -> float:
    """
    Capture latency to subtract from a motion event (ms).

    Args:
        metadata: Motion metadata of the event
        stats: Current calibration snapshot

    Returns:
        Latency from the first applicable strategy, 0.0 if none applies
    """
    strategies = (CALIBRATED_CAPTURE_STRATEGIES if stats.is_calibrated
                  else UNCALIBRATED_CAPTURE_STRATEGIES)
    latency = first_valid([lambda s=s: s(metadata, stats) for s in strategies])
    return latency if latency is not None else 0.0


def compensate_timestamp(
    local_now_ms: float,
    offset_ms: float,
    stats: CalibrationStats,
    source: EventSource,
    metadata: Optional[MotionMetadata] = None,
) -> float:
    """
    Compute the unified timestamp of a trigger.

    Pure function: identical inputs always give the identical result.

    Args:
        local_now_ms: Local monotonic time of the trigger (ms)
        offset_ms: Current clock offset (ms)
        stats: Current calibration snapshot
        source: Trigger source
        metadata: Motion metadata (motion events only)

    Returns:
        Unified timestamp (ms)
    """
    unified = local_now_ms + offset_ms

    if stats.is_calibrated:
        unified -= stats.system_lag_ms

    if source == EventSource.MOTION:
        unified -= capture_latency(metadata, stats)
        if metadata is not None and metadata.processing_latency is not None:
            unified -= metadata.processing_latency

    return unified


class EventStamper:
    """
    Creates GateEvents stamped with the current offset and calibration.

    Usage:
        stamper = EventStamper(estimator, lambda: runner.stats)
        event = stamper.stamp(EventSource.MANUAL)
    """

    def __init__(
        self,
        estimator: ClockOffsetEstimator,
        stats_provider: Callable[[], CalibrationStats],
        clock_ms: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize stamper.

        Args:
            estimator: Source of the current offset
            stats_provider: Returns the current calibration snapshot
            clock_ms: Local monotonic clock (default: the estimator's)
        """
        self.estimator = estimator
        self.stats_provider = stats_provider
        self.clock_ms = clock_ms or estimator.clock_ms
        self.metrics = get_metrics()

    def stamp(
        self,
        source: EventSource,
        metadata: Optional[MotionMetadata] = None,
        local_now_ms: Optional[float] = None,
    ) -> GateEvent:
        """
        Stamp a trigger that happened now (or at local_now_ms).

        Args:
            source: Trigger source
            metadata: Motion metadata (motion events only)
            local_now_ms: Local time of the trigger, default now

        Returns:
            GateEvent with the compensated timestamp
        """
        if local_now_ms is None:
            local_now_ms = self.clock_ms()

        offset = self.estimator.offset_ms
        stats = self.stats_provider()

        timestamp = compensate_timestamp(local_now_ms, offset, stats, source, metadata)

        self.metrics.increment('events_stamped')
        self.metrics.record_histogram('compensation_ms', local_now_ms + offset - timestamp)
        if not stats.is_calibrated:
            logger.debug("Stamping with uncalibrated stats")

        return GateEvent(
            timestamp=timestamp,
            source=source,
            metadata=metadata if source == EventSource.MOTION else None,
        )
