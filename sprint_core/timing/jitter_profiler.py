"""
Local Jitter & Capture Profiler.

Measures the local delays that inflate every "now" taken on this device:
- System lag: excess duration of a fixed 10ms wait, averaged over 50 waits
- Capture cadence: frames delivered by a capture source in 1s of wall time,
  giving frame_rate and frame_duration (half a frame is the statistical
  capture latency when no hardware timestamp exists)

CalibrationRunner combines these with the estimator's network link
measurement and publishes one immutable CalibrationStats snapshot per run.
Failures inside a run are logged and the prior values kept; run() never
raises to its caller.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from sprint_core.proto import CalibrationStats, create_uncalibrated_stats
from sprint_core.capture import CaptureSource, Frame
from sprint_core.metrics import get_metrics
from sprint_core.clock import perf_ms, sleep_ms as default_sleep_ms
from .offset_estimator import ClockOffsetEstimator

logger = logging.getLogger(__name__)


class CaptureUnavailableError(Exception):
    """Capture source delivered too few frames to measure a cadence."""


class CalibrationCancelledError(Exception):
    """A cadence measurement was cancelled by teardown."""


@dataclass
class CalibrationConfig:
    """
    Configuration for calibration runs.

    Attributes:
        jitter_samples: Number of fixed waits to time
        jitter_wait_ms: Requested duration of each wait (ms)
        frame_window_ms: Wall time to count frames over (ms)
        frame_timeout_ms: Give up on a silent capture source after this (ms)
        link_count: Probes for the network link measurement
    """

    jitter_samples: int = 50
    jitter_wait_ms: float = 10.0
    frame_window_ms: float = 1000.0
    frame_timeout_ms: float = 3000.0
    link_count: int = 20

    def __post_init__(self):
        """Validate configuration."""
        assert self.jitter_samples > 0, "jitter_samples must be positive"
        assert self.jitter_wait_ms > 0, "jitter_wait_ms must be positive"
        assert self.frame_window_ms > 0, "frame_window_ms must be positive"
        assert self.frame_timeout_ms >= self.frame_window_ms, \
            "frame_timeout_ms must cover at least one window"
        assert self.link_count > 0, "link_count must be positive"


def measure_system_lag(
    samples: int = 50,
    wait_ms: float = 10.0,
    clock_ms: Callable[[], float] = perf_ms,
    sleep_ms: Callable[[float], None] = default_sleep_ms,
) -> float:
    """
    Mean excess delay of a fixed wait.

    Args:
        samples: Number of waits to time
        wait_ms: Requested wait (ms)
        clock_ms: Timer used to measure each wait (ms)
        sleep_ms: The wait being measured

    Returns:
        Average of (actual - requested) in ms
    """
    total_lag = 0.0
    for _ in range(samples):
        start = clock_ms()
        sleep_ms(wait_ms)
        total_lag += (clock_ms() - start) - wait_ms

    lag = total_lag / samples
    logger.debug(f"System lag: {lag:.2f}ms over {samples} waits of {wait_ms:.0f}ms")
    return lag


def measure_frame_rate(
    source: CaptureSource,
    window_ms: float = 1000.0,
    timeout_ms: float = 3000.0,
    clock_ms: Callable[[], float] = perf_ms,
    cancel_event: Optional[threading.Event] = None,
) -> Tuple[float, float]:
    """
    Count delivered frames over a window of wall time.

    Args:
        source: Capture source to watch
        window_ms: Counting window (ms)
        timeout_ms: Abort if the window has not closed after this long (ms)
        clock_ms: Timer used for the window (ms)
        cancel_event: Set to abort the watch

    Returns:
        (frame_rate, frame_duration_ms)

    Raises:
        CaptureUnavailableError: Source stalled or too slow to measure
        CalibrationCancelledError: cancel_event was set
    """
    lock = threading.Lock()
    done = threading.Event()
    state = {'frames': 0, 'elapsed': 0.0}
    start = clock_ms()

    def on_frame(frame: Frame):
        with lock:
            if done.is_set():
                return
            state['frames'] += 1
            elapsed = clock_ms() - start
            if elapsed >= window_ms:
                state['elapsed'] = elapsed
                done.set()

    subscription = source.subscribe(on_frame)
    deadline = time.monotonic() + timeout_ms / 1000.0
    try:
        while not done.wait(0.05):
            if cancel_event is not None and cancel_event.is_set():
                raise CalibrationCancelledError("frame cadence watch cancelled")
            if time.monotonic() > deadline:
                raise CaptureUnavailableError(
                    f"only {state['frames']} frames within {timeout_ms:.0f}ms"
                )
    finally:
        subscription.cancel()

    frame_rate = round(state['frames'] * 1000.0 / state['elapsed'])
    if frame_rate <= 0:
        raise CaptureUnavailableError(f"frame rate too low to measure ({state['frames']} frames)")

    frame_duration = 1000.0 / frame_rate
    logger.debug(f"Capture cadence: {frame_rate} fps ({frame_duration:.1f}ms/frame)")
    return float(frame_rate), frame_duration


class CalibrationRunner:
    """
    Runs calibration and owns the published CalibrationStats snapshot.

    Usage:
        runner = CalibrationRunner(estimator)
        stats = runner.run(capture_source=camera)   # never raises
        if runner.stats.is_calibrated:
            ...
    """

    def __init__(
        self,
        estimator: ClockOffsetEstimator,
        config: Optional[CalibrationConfig] = None,
        lag_clock_ms: Callable[[], float] = perf_ms,
        lag_sleep_ms: Callable[[float], None] = default_sleep_ms,
        frame_clock_ms: Callable[[], float] = perf_ms,
    ):
        """
        Initialize runner.

        Args:
            estimator: Offset estimator used for the link measurement
            config: Calibration configuration (uses defaults if None)
            lag_clock_ms: Timer for the system lag measurement
            lag_sleep_ms: Wait whose excess is measured
            frame_clock_ms: Timer for the frame cadence window
        """
        self.estimator = estimator
        self.config = config or CalibrationConfig()
        self.metrics = get_metrics()
        self._lag_clock_ms = lag_clock_ms
        self._lag_sleep_ms = lag_sleep_ms
        self._frame_clock_ms = frame_clock_ms

        self._stats_lock = threading.Lock()
        self._stats = create_uncalibrated_stats()

        self._run_lock = threading.Lock()
        self._cancel_event = threading.Event()

    @property
    def stats(self) -> CalibrationStats:
        """Latest published snapshot."""
        with self._stats_lock:
            return self._stats

    @property
    def is_calibrating(self) -> bool:
        """True while a run is in progress."""
        return self._run_lock.locked()

    def run(self, capture_source: Optional[CaptureSource] = None) -> CalibrationStats:
        """
        Run one full calibration and publish the result.

        Link and system-lag measurements run concurrently; the capture
        cadence is measured afterwards when a source is given. A failed
        sub-measurement keeps its previous value.

        Args:
            capture_source: Optional capture source for the frame cadence

        Returns:
            The published snapshot (the current one if a run was in flight)
        """
        if not self._run_lock.acquire(blocking=False):
            logger.debug("Calibration already running")
            return self.stats

        try:
            self._cancel_event.clear()
            self.metrics.increment('calibration_runs')
            logger.info("Calibration started")

            prior = self.stats
            updates = {}

            with ThreadPoolExecutor(max_workers=2, thread_name_prefix='calibration') as pool:
                link_future = pool.submit(self.estimator.measure_link, self.config.link_count)
                lag_future = pool.submit(
                    measure_system_lag,
                    self.config.jitter_samples,
                    self.config.jitter_wait_ms,
                    self._lag_clock_ms,
                    self._lag_sleep_ms,
                )
                link = self._collect_result(link_future, 'network link')
                lag = self._collect_result(lag_future, 'system lag')

            if link is not None:
                updates.update(
                    offset_ms=link.offset_ms,
                    round_trip_ms=link.round_trip_ms,
                    jitter_std_ms=link.jitter_std_ms,
                    upload_latency_ms=link.upload_latency_ms,
                    download_latency_ms=link.download_latency_ms,
                )
            else:
                logger.warning("Network link measurement failed, keeping previous values")

            if lag is not None:
                updates['system_lag_ms'] = lag

            if capture_source is not None:
                cadence = self._measure_cadence(capture_source)
                if cadence is not None:
                    updates['frame_rate'], updates['frame_duration_ms'] = cadence
            else:
                logger.debug("No capture source, frame cadence skipped")

            # Calibrated once the reference has been reached at least once
            is_calibrated = prior.is_calibrated or link is not None
            stats = replace(prior, is_calibrated=is_calibrated, **updates)

            with self._stats_lock:
                self._stats = stats

            logger.info(f"Calibration published: rtt={stats.round_trip_ms:.1f}ms "
                        f"jitter={stats.jitter_std_ms:.1f}ms lag={stats.system_lag_ms:.2f}ms "
                        f"fps={stats.frame_rate:.0f} ({stats.health.name})")
            return stats

        except Exception as e:
            logger.error(f"Calibration failed: {e}", exc_info=True)
            return self.stats
        finally:
            self._run_lock.release()

    def cancel(self):
        """Abort an in-flight frame cadence watch."""
        self._cancel_event.set()

    def _measure_cadence(self, source: CaptureSource) -> Optional[Tuple[float, float]]:
        """Frame cadence, or None on failure."""
        try:
            return measure_frame_rate(
                source,
                window_ms=self.config.frame_window_ms,
                timeout_ms=self.config.frame_timeout_ms,
                clock_ms=self._frame_clock_ms,
                cancel_event=self._cancel_event,
            )
        except CaptureUnavailableError as e:
            self.metrics.increment_drop('capture_timeout')
            logger.warning(f"Frame cadence skipped: {e}")
        except CalibrationCancelledError:
            logger.info("Frame cadence cancelled")
        return None

    def _collect_result(self, future: Future, name: str):
        """Result of a sub-measurement, None if it raised."""
        try:
            return future.result()
        except Exception as e:
            logger.error(f"Calibration {name} measurement failed: {e}")
            return None
