"""
Unit tests for the reference time client and clock offset estimator.

Tests cover:
- Probe wrapping of transport failures
- Startup burst averaging and soft failure
- Periodic correction (clamp, EMA, outlier rejection)
- Busy flag and teardown behaviour
- Link measurement fallback chain
- Background sync loop
"""

import threading
import time

import pytest

from sprint_core.metrics import get_metrics
from sprint_core.timing import (
    TimeSource,
    EchoReply,
    ReferenceTimeClient,
    ProbeError,
    ClockOffsetEstimator,
    OffsetEstimatorConfig,
    SyncStatus,
    METHOD_ASYMMETRIC,
    METHOD_SYMMETRIC,
    create_default_estimator,
)


def make_estimator(source, clock, **config_overrides) -> ClockOffsetEstimator:
    """Estimator on the fake clock with instant probe spacing."""
    client = ReferenceTimeClient(source, clock_ms=clock)
    return ClockOffsetEstimator(client, OffsetEstimatorConfig(**config_overrides),
                                sleep_ms=clock.sleep)


# =============================================================================
# Reference Time Client
# =============================================================================


class TestReferenceTimeClient:
    """Tests for raw probing."""

    def test_probe_returns_sample(self, fake_clock, scripted_source):
        """A probe yields the scripted offset and RTT."""
        client = ReferenceTimeClient(scripted_source([(250.0, 30.0)]), clock_ms=fake_clock)
        sample = client.probe()

        assert sample.round_trip_time == pytest.approx(30.0)
        assert sample.estimated_offset == pytest.approx(250.0)
        assert get_metrics().get_counter('probes_ok') == 1

    def test_failure_wrapped(self, fake_clock, scripted_source):
        """Transport errors surface as ProbeError."""
        client = ReferenceTimeClient(scripted_source([None]), clock_ms=fake_clock)
        with pytest.raises(ProbeError):
            client.probe()
        assert get_metrics().get_counter('probes_sent') == 1
        assert get_metrics().get_counter('probes_ok') == 0

    def test_echo_unsupported(self, fake_clock, scripted_source):
        """Sources without echo raise ProbeError on probe_echo."""
        client = ReferenceTimeClient(scripted_source([(0.0, 10.0)]), clock_ms=fake_clock)
        assert not client.supports_echo
        with pytest.raises(ProbeError):
            client.probe_echo()

    def test_echo_mismatch(self, fake_clock):
        """An echo carrying a different send time is rejected."""

        class WrongEcho(TimeSource):
            supports_echo = True

            def server_now_ms(self):
                return 0.0

            def echo(self, client_send_ms):
                return EchoReply(10.0, 11.0, client_send_ms + 1.0)

        client = ReferenceTimeClient(WrongEcho(), clock_ms=fake_clock)
        with pytest.raises(ProbeError):
            client.probe_echo()


# =============================================================================
# Startup Burst
# =============================================================================


class TestStartupBurst:
    """Tests for the initial offset measurement."""

    def test_offset_is_mean(self, fake_clock, scripted_source):
        """Initial offset equals the mean of five estimates."""
        offsets = [100.0, 110.0, 90.0, 105.0, 95.0]
        source = scripted_source([(o, 20.0) for o in offsets])
        estimator = make_estimator(source, fake_clock)

        assert not estimator.has_initial_offset
        offset = estimator.run_startup_burst()

        assert offset == pytest.approx(100.0)
        assert estimator.offset_ms == pytest.approx(100.0)
        assert estimator.has_initial_offset
        assert source.calls == 5

    def test_probe_spacing(self, fake_clock, scripted_source):
        """Burst probes are spaced ~100ms apart."""
        sleeps = []
        client = ReferenceTimeClient(scripted_source([(0.0, 10.0)]), clock_ms=fake_clock)
        estimator = ClockOffsetEstimator(client, sleep_ms=sleeps.append)

        estimator.run_startup_burst()
        assert sleeps == [100.0] * 4

    def test_failed_probes_discarded(self, fake_clock, scripted_source):
        """Failed probes are skipped and counted."""
        source = scripted_source([None, (100.0, 20.0), None, (110.0, 20.0), (90.0, 20.0)])
        estimator = make_estimator(source, fake_clock)

        assert estimator.run_startup_burst() == pytest.approx(100.0)
        assert get_metrics().get_drop_count('probe_failed') == 2

    def test_unreachable_source(self, fake_clock, scripted_source):
        """No reachable reference leaves offset 0 without raising."""
        estimator = make_estimator(scripted_source([None]), fake_clock)

        assert estimator.run_startup_burst() is None
        assert estimator.offset_ms == 0.0
        assert not estimator.has_initial_offset
        assert estimator.now_ms() == fake_clock.now
        assert get_metrics().get_drop_count('no_valid_samples') == 1

    def test_second_burst_keeps_offset(self, fake_clock, scripted_source):
        """A repeat burst neither probes nor moves an established offset."""
        source = scripted_source([(100.0, 20.0)] * 5 + [(900.0, 20.0)] * 5)
        estimator = make_estimator(source, fake_clock)

        assert estimator.run_startup_burst() == pytest.approx(100.0)
        assert estimator.run_startup_burst() == pytest.approx(100.0)

        assert estimator.offset_ms == pytest.approx(100.0)
        assert source.calls == 5
        assert get_metrics().get_counter('startup_bursts') == 1

    def test_snapshot_is_copy(self, fake_clock, scripted_source):
        """Snapshots report sync age and do not track later changes."""
        estimator = make_estimator(scripted_source([(40.0, 10.0)]), fake_clock)
        assert estimator.snapshot().last_sync_age_s is None

        estimator.run_startup_burst()
        fake_clock.advance(5000.0)
        snapshot = estimator.snapshot()

        assert snapshot.offset_ms == pytest.approx(40.0)
        assert snapshot.last_sync_age_s == pytest.approx(5.0)

        estimator.run_correction_cycle()
        assert snapshot.cycles_completed == 0


# =============================================================================
# Periodic Correction
# =============================================================================


class TestCorrectionCycle:
    """Tests for drift correction."""

    def test_clamp_and_ema(self, fake_clock, scripted_source):
        """current 0, best sample 80 -> 0 + clamp(80, 50) * 0.3 = 15."""
        source = scripted_source([
            (70.0, 90.0),
            (80.0, 15.0),   # lowest RTT
            (60.0, 40.0),
            (75.0, 120.0),
            (65.0, 60.0),
        ])
        estimator = make_estimator(source, fake_clock)

        result = estimator.run_correction_cycle()

        assert result.status == SyncStatus.APPLIED
        assert result.applied
        assert result.raw_correction_ms == pytest.approx(80.0)
        assert result.clamped_correction_ms == pytest.approx(50.0)
        assert result.offset_ms == pytest.approx(15.0)
        assert estimator.offset_ms == pytest.approx(15.0)
        assert result.best_sample.round_trip_time == pytest.approx(15.0)

    def test_probe_spacing(self, fake_clock, scripted_source):
        """Correction probes are spaced ~50ms apart."""
        sleeps = []
        client = ReferenceTimeClient(scripted_source([(0.0, 10.0)]), clock_ms=fake_clock)
        estimator = ClockOffsetEstimator(client, sleep_ms=sleeps.append)

        estimator.run_correction_cycle()
        assert sleeps == [50.0] * 4

    def test_all_outliers_keep_offset(self, fake_clock, scripted_source):
        """Every RTT over 200ms leaves the offset untouched."""
        script = [(100.0, 20.0)] * 5 + [(400.0, 250.0)] * 5
        estimator = make_estimator(scripted_source(script), fake_clock)
        estimator.run_startup_burst()

        result = estimator.run_correction_cycle()

        assert result.status == SyncStatus.NO_VALID_SAMPLES
        assert estimator.offset_ms == pytest.approx(100.0)
        assert get_metrics().get_drop_count('rtt_outlier') == 5

    def test_converges_over_cycles(self, fake_clock, scripted_source):
        """Repeated cycles approach the measured offset."""
        estimator = make_estimator(scripted_source([(30.0, 10.0)]), fake_clock)

        for _ in range(30):
            estimator.run_correction_cycle()

        assert estimator.offset_ms == pytest.approx(30.0, abs=0.01)
        assert estimator.snapshot().cycles_completed == 30


# =============================================================================
# Busy Flag and Teardown
# =============================================================================


class BlockingSource(TimeSource):
    """Source that blocks every probe until released."""

    def __init__(self, clock):
        self.clock = clock
        self.entered = threading.Event()
        self.release = threading.Event()

    def server_now_ms(self):
        self.entered.set()
        self.release.wait(5.0)
        return self.clock.now


class TestBusyAndTeardown:
    """Tests for concurrency guards."""

    def test_second_trigger_is_noop(self, fake_clock):
        """A cycle requested while one is in flight returns BUSY."""
        source = BlockingSource(fake_clock)
        estimator = make_estimator(source, fake_clock)

        worker = threading.Thread(target=estimator.run_correction_cycle)
        worker.start()
        assert source.entered.wait(2.0)

        result = estimator.run_correction_cycle()
        assert result.status == SyncStatus.BUSY
        assert estimator.run_startup_burst() is None

        source.release.set()
        worker.join(2.0)
        assert get_metrics().get_drop_count('sync_busy') == 2

    def test_late_probe_ignored_after_stop(self, fake_clock, scripted_source):
        """A result arriving after stop() never writes the offset."""
        estimator = None

        class StopDuringProbe(TimeSource):
            def server_now_ms(self):
                estimator.stop()
                return fake_clock.now + 500.0

        estimator = make_estimator(StopDuringProbe(), fake_clock)

        assert estimator.run_startup_burst() is None
        assert estimator.offset_ms == 0.0
        assert get_metrics().get_drop_count('late_probe') == 1

    def test_cycle_after_stop(self, fake_clock, scripted_source):
        """Stopped estimators report STOPPED and do not probe."""
        source = scripted_source([(10.0, 10.0)])
        estimator = make_estimator(source, fake_clock)
        estimator.stop()

        assert estimator.run_correction_cycle().status == SyncStatus.STOPPED
        assert source.calls == 0

    def test_cannot_restart(self, fake_clock, scripted_source):
        """A stopped estimator stays stopped."""
        estimator = make_estimator(scripted_source([(10.0, 10.0)]), fake_clock)
        estimator.stop()
        with pytest.raises(RuntimeError):
            estimator.start()


# =============================================================================
# Link Measurement
# =============================================================================


class TestMeasureLink:
    """Tests for calibration link measurement."""

    def test_asymmetric_preferred(self, fake_clock, echo_source):
        """Echo-capable sources use the 4-timestamp method."""
        source = echo_source([(300.0, 12.0, 8.0)])
        estimator = make_estimator(source, fake_clock)

        estimate = estimator.measure_link(count=10)

        assert estimate.method == METHOD_ASYMMETRIC
        assert estimate.num_samples == 10
        assert estimate.round_trip_ms == pytest.approx(20.0)
        assert source.echo_calls == 10
        assert estimator.offset_ms == 0.0

    def test_fallback_to_symmetric(self, fake_clock, echo_source):
        """All echo samples rejected -> symmetric probes."""
        source = echo_source([(300.0, 400.0, 400.0)])
        estimator = make_estimator(source, fake_clock)

        estimate = estimator.measure_link(count=5)

        assert estimate.method == METHOD_SYMMETRIC
        assert estimate.upload_latency_ms == pytest.approx(estimate.round_trip_ms / 2.0)

    def test_symmetric_only_source(self, fake_clock, scripted_source):
        """Sources without echo go straight to symmetric."""
        estimator = make_estimator(scripted_source([(50.0, 30.0)]), fake_clock)

        estimate = estimator.measure_link(count=4)

        assert estimate.method == METHOD_SYMMETRIC
        assert estimate.offset_ms == pytest.approx(50.0)

    def test_unreachable(self, fake_clock, scripted_source):
        """No samples at all -> None."""
        estimator = make_estimator(scripted_source([None]), fake_clock)
        assert estimator.measure_link(count=3) is None


# =============================================================================
# Background Loop
# =============================================================================


class TestBackgroundLoop:
    """Tests for start()/stop()."""

    def test_burst_then_corrections(self, fake_clock, scripted_source):
        """The loop bursts immediately and corrects every interval."""
        estimator = make_estimator(scripted_source([(25.0, 10.0)]), fake_clock,
                                   sync_interval_s=0.02)
        estimator.start()
        try:
            deadline = time.monotonic() + 3.0
            while estimator.snapshot().cycles_completed < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            estimator.stop()

        assert estimator.has_initial_offset
        assert estimator.snapshot().cycles_completed >= 2
        assert not estimator.is_running

    def test_first_correction_waits_one_interval(self, fake_clock, scripted_source):
        """With a long interval only the burst runs."""
        source = scripted_source([(25.0, 10.0)])
        estimator = make_estimator(source, fake_clock, sync_interval_s=30.0)
        estimator.start()
        try:
            deadline = time.monotonic() + 2.0
            while not estimator.has_initial_offset and time.monotonic() < deadline:
                time.sleep(0.01)
            time.sleep(0.05)
        finally:
            estimator.stop()

        assert estimator.has_initial_offset
        assert estimator.snapshot().cycles_completed == 0
        assert source.calls == 5

    def test_default_factory(self, fake_clock, scripted_source):
        """Default estimator uses the standard cadences."""
        client = ReferenceTimeClient(scripted_source([(0.0, 10.0)]), clock_ms=fake_clock)
        estimator = create_default_estimator(client)

        assert estimator.config.burst_count == 5
        assert estimator.config.sync_interval_s == 30.0
        assert estimator.config.max_correction_ms == 50.0
        assert estimator.config.alpha == pytest.approx(0.3)
