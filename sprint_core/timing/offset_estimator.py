"""
Clock Offset Estimator.

Maintains the single offset that maps local monotonic time to reference time:

    unified_time ≈ local_monotonic_ms + offset_ms

Two refresh cadences:
1. Startup burst: 5 probes ~100ms apart on first reachability; the offset is
   the plain mean of the per-sample estimates (nothing to protect yet).
2. Periodic drift correction: every 30s (first run one full interval after
   start), 5 probes ~50ms apart. Samples over the RTT outlier threshold are
   rejected, the lowest-RTT survivor wins, and the step is clamped to
   ±max_correction_ms then scaled by the EMA factor.

Single writer: only this object mutates the offset, under its state lock.
Consumers read snapshots. A busy flag keeps at most one sync cycle in flight.
After stop(), late probe results are discarded and never touch the offset.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from sprint_core.proto import ClockSample
from sprint_core.metrics import get_metrics
from .reference_client import ReferenceTimeClient, ProbeError
from .offset_strategies import (
    LinkEstimate,
    burst_mean_offset,
    best_rtt_sample,
    filter_rtt_outliers,
    clamp_correction,
    smoothed_offset,
    estimate_asymmetric,
    estimate_symmetric,
    first_valid,
)

logger = logging.getLogger(__name__)


@dataclass
class OffsetEstimatorConfig:
    """
    Configuration for the clock offset estimator.

    Attributes:
        burst_count: Probes in the startup burst
        burst_spacing_ms: Gap between burst probes (ms)
        sync_interval_s: Period of the drift correction loop (s)
        sync_count: Probes per correction cycle
        sync_spacing_ms: Gap between correction probes (ms)
        max_rtt_ms: RTT above which a correction sample is rejected (ms)
        max_correction_ms: Clamp on a single raw correction (ms)
        alpha: EMA smoothing factor applied after the clamp
        link_count: Probes per calibration link measurement
        link_spacing_ms: Gap between link probes (ms)
        echo_max_rtt_ms: RTT above which an echo sample is rejected (ms)
    """

    burst_count: int = 5
    burst_spacing_ms: float = 100.0
    sync_interval_s: float = 30.0
    sync_count: int = 5
    sync_spacing_ms: float = 50.0
    max_rtt_ms: float = 200.0
    max_correction_ms: float = 50.0
    alpha: float = 0.3
    link_count: int = 20
    link_spacing_ms: float = 50.0
    echo_max_rtt_ms: float = 500.0

    def __post_init__(self):
        """Validate configuration."""
        assert self.burst_count > 0, "burst_count must be positive"
        assert self.sync_count > 0, "sync_count must be positive"
        assert self.link_count > 0, "link_count must be positive"
        assert self.sync_interval_s > 0, "sync_interval_s must be positive"
        assert self.max_rtt_ms > 0, "max_rtt_ms must be positive"
        assert self.max_correction_ms > 0, "max_correction_ms must be positive"
        assert 0 < self.alpha <= 1, "alpha must be in (0, 1]"


class SyncStatus(Enum):
    """Outcome of a drift correction cycle."""
    APPLIED = 'applied'                    # Offset moved by the smoothed step
    NO_VALID_SAMPLES = 'no_valid_samples'  # Every sample failed or was an outlier
    BUSY = 'busy'                          # Another cycle was already in flight
    STOPPED = 'stopped'                    # Estimator torn down


@dataclass(frozen=True)
class SyncResult:
    """
    Result of one correction cycle.

    Attributes:
        status: SyncStatus
        offset_ms: Offset after the cycle (unchanged unless APPLIED)
        raw_correction_ms: best sample offset - previous offset
        clamped_correction_ms: raw correction after the clamp
        best_sample: Lowest-RTT surviving sample
        samples_collected: Probes that returned a sample
    """

    status: SyncStatus
    offset_ms: float
    raw_correction_ms: Optional[float] = None
    clamped_correction_ms: Optional[float] = None
    best_sample: Optional[ClockSample] = None
    samples_collected: int = 0

    @property
    def applied(self) -> bool:
        """True if the offset was updated."""
        return self.status == SyncStatus.APPLIED


@dataclass(frozen=True)
class OffsetSnapshot:
    """
    Read-only view of the estimator state.

    Attributes:
        offset_ms: Current offset (ms)
        has_initial_offset: True once a startup burst succeeded
        last_sync_age_s: Seconds since the offset last changed (None if never)
        cycles_completed: Correction cycles that applied a step
    """

    offset_ms: float
    has_initial_offset: bool
    last_sync_age_s: Optional[float]
    cycles_completed: int


class ClockOffsetEstimator:
    """
    Owner of the local-to-reference clock offset.

    Usage:
        estimator = ClockOffsetEstimator(ReferenceTimeClient(source))
        estimator.start()              # burst now, corrections every 30s
        unified = estimator.now_ms()
        ...
        estimator.stop()

    Manual driving (tests, CLI):
        estimator.run_startup_burst()
        result = estimator.run_correction_cycle()
    """

    def __init__(
        self,
        client: ReferenceTimeClient,
        config: Optional[OffsetEstimatorConfig] = None,
        sleep_ms: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize estimator.

        Args:
            client: Reference time client used for all probes
            config: Estimator configuration (uses defaults if None)
            sleep_ms: Wait between probes (default: interruptible by stop())
        """
        self.client = client
        self.config = config or OffsetEstimatorConfig()
        self.clock_ms = client.clock_ms
        self.metrics = get_metrics()

        self._sleep_ms = sleep_ms or self._interruptible_sleep

        # Offset state, written only under _state_lock
        self._state_lock = threading.Lock()
        self._offset_ms = 0.0
        self._has_initial_offset = False
        self._last_sync_time: Optional[float] = None
        self._cycles_completed = 0
        self._torn_down = False

        # Busy flag: at most one burst/correction in flight
        self._busy = threading.Lock()

        # Background loop
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def offset_ms(self) -> float:
        """Current offset (ms)."""
        with self._state_lock:
            return self._offset_ms

    @property
    def has_initial_offset(self) -> bool:
        """True once a startup burst has succeeded."""
        with self._state_lock:
            return self._has_initial_offset

    @property
    def is_running(self) -> bool:
        """True while the background sync loop is alive."""
        return self._thread is not None and self._thread.is_alive()

    def now_ms(self) -> float:
        """Unified time now (ms)."""
        return self.clock_ms() + self.offset_ms

    def snapshot(self) -> OffsetSnapshot:
        """Copy of the current estimator state."""
        now = self.clock_ms()
        with self._state_lock:
            age = None
            if self._last_sync_time is not None:
                age = (now - self._last_sync_time) / 1000.0
            return OffsetSnapshot(
                offset_ms=self._offset_ms,
                has_initial_offset=self._has_initial_offset,
                last_sync_age_s=age,
                cycles_completed=self._cycles_completed,
            )

    # ------------------------------------------------------------------
    # Sync operations
    # ------------------------------------------------------------------

    def run_startup_burst(self) -> Optional[float]:
        """
        Measure the initial offset.

        Returns:
            New offset (ms), or None if no probe succeeded, another cycle was
            in flight, or the estimator was stopped. Once an initial offset
            exists the burst is skipped and the current offset returned;
            later changes go through run_correction_cycle().
        """
        with self._state_lock:
            if self._has_initial_offset:
                logger.debug(f"Startup burst skipped: offset already {self._offset_ms:.1f}ms")
                return self._offset_ms

        if not self._busy.acquire(blocking=False):
            self.metrics.increment_drop('sync_busy')
            logger.debug("Startup burst skipped: sync already in flight")
            return None

        try:
            samples = self._collect(
                self.client.probe, self.config.burst_count, self.config.burst_spacing_ms
            )
            offset = burst_mean_offset(samples)

            if offset is None:
                self.metrics.increment_drop('no_valid_samples')
                logger.warning(f"Startup burst failed: reference time source unreachable, "
                               f"offset stays at {self.offset_ms:.1f}ms")
                return None

            with self._state_lock:
                if self._torn_down:
                    self.metrics.increment_drop('late_probe')
                    return None
                if self._has_initial_offset:
                    return self._offset_ms
                self._offset_ms = offset
                self._has_initial_offset = True
                self._last_sync_time = self.clock_ms()

            self.metrics.increment('startup_bursts')
            logger.info(f"Startup burst complete: offset={offset:.1f}ms "
                        f"from {len(samples)}/{self.config.burst_count} samples")
            return offset
        finally:
            self._busy.release()

    def run_correction_cycle(self) -> SyncResult:
        """
        Run one drift correction cycle.

        Returns:
            SyncResult; offset_ms holds the (possibly unchanged) offset
        """
        if self._stop_event.is_set():
            return SyncResult(status=SyncStatus.STOPPED, offset_ms=self.offset_ms)

        if not self._busy.acquire(blocking=False):
            self.metrics.increment_drop('sync_busy')
            logger.debug("Correction skipped: sync already in flight")
            return SyncResult(status=SyncStatus.BUSY, offset_ms=self.offset_ms)

        try:
            self.metrics.increment('sync_cycles')

            samples = self._collect(
                self.client.probe, self.config.sync_count, self.config.sync_spacing_ms
            )

            outliers = len(samples) - len(filter_rtt_outliers(samples, self.config.max_rtt_ms))
            if outliers:
                self.metrics.increment_drop('rtt_outlier', outliers)

            best = best_rtt_sample(samples, self.config.max_rtt_ms)
            if best is None:
                self.metrics.increment_drop('no_valid_samples')
                logger.warning(f"Drift correction skipped: no valid samples "
                               f"({len(samples)} collected, {outliers} outliers)")
                return SyncResult(
                    status=SyncStatus.NO_VALID_SAMPLES,
                    offset_ms=self.offset_ms,
                    samples_collected=len(samples),
                )

            with self._state_lock:
                if self._torn_down:
                    self.metrics.increment_drop('late_probe')
                    return SyncResult(status=SyncStatus.STOPPED, offset_ms=self._offset_ms)

                current = self._offset_ms
                raw = best.estimated_offset - current
                clamped = clamp_correction(raw, self.config.max_correction_ms)
                new_offset = smoothed_offset(
                    current, best.estimated_offset,
                    self.config.max_correction_ms, self.config.alpha,
                )
                self._offset_ms = new_offset
                self._last_sync_time = self.clock_ms()
                self._cycles_completed += 1

            self.metrics.increment('corrections_applied')
            self.metrics.record_histogram('offset_correction_ms', new_offset - current)

            if clamped != raw:
                logger.info(f"Drift correction clamped: raw={raw:.1f}ms -> {clamped:.1f}ms")
            logger.info(f"Drift correction applied: offset {current:.1f} -> {new_offset:.1f}ms "
                        f"(best rtt={best.round_trip_time:.1f}ms)")

            return SyncResult(
                status=SyncStatus.APPLIED,
                offset_ms=new_offset,
                raw_correction_ms=raw,
                clamped_correction_ms=clamped,
                best_sample=best,
                samples_collected=len(samples),
            )
        finally:
            self._busy.release()

    def measure_link(self, count: Optional[int] = None) -> Optional[LinkEstimate]:
        """
        Measure network link quality for calibration reporting.

        Tries the asymmetric echo exchange first (when the source supports
        it), then falls back to symmetric probes. Does not touch the offset.

        Args:
            count: Probes per strategy (default: config.link_count)

        Returns:
            LinkEstimate from the first strategy with valid samples, or None
        """
        count = count or self.config.link_count
        spacing = self.config.link_spacing_ms

        def asymmetric() -> Optional[LinkEstimate]:
            if not self.client.supports_echo:
                return None
            samples = self._collect(self.client.probe_echo, count, spacing)
            negative = sum(1 for s in samples if s.has_negative_latency)
            if negative:
                self.metrics.increment_drop('negative_latency', negative)
            estimate = estimate_asymmetric(samples, self.config.echo_max_rtt_ms)
            if estimate is None:
                logger.warning("Asymmetric link measurement found no valid samples, "
                               "falling back to symmetric")
            return estimate

        def symmetric() -> Optional[LinkEstimate]:
            samples = self._collect(self.client.probe, count, spacing)
            return estimate_symmetric(samples)

        estimate = first_valid([asymmetric, symmetric])
        if estimate is None:
            self.metrics.increment_drop('no_valid_samples')
            return None

        logger.info(f"Link measured ({estimate.method}): rtt={estimate.round_trip_ms:.1f}ms "
                    f"jitter={estimate.jitter_std_ms:.1f}ms "
                    f"up={estimate.upload_latency_ms:.1f}ms down={estimate.download_latency_ms:.1f}ms")
        return estimate

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self):
        """Start the background sync loop (startup burst, then corrections)."""
        if self.is_running:
            return
        if self._stop_event.is_set():
            raise RuntimeError("ClockOffsetEstimator cannot be restarted after stop()")

        self._thread = threading.Thread(target=self._run_loop, name='clock-sync', daemon=True)
        self._thread.start()
        logger.info(f"Clock sync loop started (interval {self.config.sync_interval_s:.0f}s)")

    def stop(self, timeout: float = 2.0):
        """
        Tear down: cancel the loop and ignore any probe still in flight.

        Args:
            timeout: Seconds to wait for the loop thread to exit
        """
        with self._state_lock:
            self._torn_down = True
        self._stop_event.set()

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Clock sync thread still blocked in a probe; result will be ignored")
        logger.info("Clock sync stopped")

    def _run_loop(self):
        """Burst until the source is reachable, then correct every interval."""
        try:
            if not self.has_initial_offset:
                self.run_startup_burst()

            while not self._stop_event.wait(self.config.sync_interval_s):
                if not self.has_initial_offset:
                    self.run_startup_burst()
                else:
                    self.run_correction_cycle()
        except Exception as e:
            logger.error(f"Clock sync loop crashed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _collect(self, probe: Callable, count: int, spacing_ms: float) -> List:
        """
        Run up to count probes spaced spacing_ms apart.

        Failed probes are logged, counted and skipped.
        """
        samples = []
        for i in range(count):
            if self._stop_event.is_set():
                break
            try:
                samples.append(probe())
            except ProbeError as e:
                self.metrics.increment_drop('probe_failed')
                logger.warning(f"Probe {i + 1}/{count} failed: {e}")
            if i < count - 1:
                self._sleep_ms(spacing_ms)
        return samples

    def _interruptible_sleep(self, duration_ms: float):
        """Sleep that returns early when stop() is called."""
        self._stop_event.wait(duration_ms / 1000.0)


def create_default_estimator(client: ReferenceTimeClient) -> ClockOffsetEstimator:
    """
    Create an estimator with the standard cadences.

    Args:
        client: Reference time client

    Returns:
        Configured ClockOffsetEstimator
    """
    config = OffsetEstimatorConfig(
        burst_count=5,
        burst_spacing_ms=100.0,
        sync_interval_s=30.0,
        sync_count=5,
        sync_spacing_ms=50.0,
        max_rtt_ms=200.0,
        max_correction_ms=50.0,
        alpha=0.3,
    )

    return ClockOffsetEstimator(client, config)
