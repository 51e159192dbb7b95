"""
Metrics counters and histograms implementation.

Provides thread-safe counters for:
- Probe counts (sent, succeeded, failed)
- Drop reasons (rtt_outlier, negative_latency, invalid_payload, etc.)
- Sync statistics (cycles run, corrections applied)
- Timing histograms (round-trip time, correction size, processing latency)

Every discarded sample or payload must be counted under a reason code.
"""

import logging
import threading
import time
from typing import Dict, List, Optional
from dataclasses import dataclass
from collections import defaultdict

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class CounterSnapshot:
    """Snapshot of counter state at a point in time."""

    timestamp: float
    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]

    def total_dropped(self) -> int:
        """Total samples dropped across all reasons."""
        return sum(self.drop_reasons.values())

    def drop_rate(self, total_samples: int) -> float:
        """Calculate drop rate as percentage."""
        if total_samples == 0:
            return 0.0
        return (self.total_dropped() / total_samples) * 100.0


class MetricsCollector:
    """
    Thread-safe metrics collection.

    Usage:
        collector = MetricsCollector()
        collector.increment('probes_sent')
        collector.increment_drop('rtt_outlier')
        collector.record_histogram('probe_rtt_ms', 12.3)

        snapshot = collector.snapshot()
        print(f"Total dropped: {snapshot.total_dropped()}")
    """

    # Standard drop reason codes
    DROP_REASONS = {
        'probe_failed': 'Round-trip probe raised or timed out',
        'rtt_outlier': 'Round-trip time above outlier threshold',
        'negative_latency': 'Echo exchange produced a negative one-way latency',
        'no_valid_samples': 'Sync cycle ended with zero usable samples',
        'sync_busy': 'Sync cycle requested while another was in flight',
        'late_probe': 'Probe completed after estimator teardown',
        'invalid_payload': 'Topic payload failed validation',
        'capture_timeout': 'Capture source delivered no frames in time',
        'frame_error': 'Frame could not be analysed',
    }

    def __init__(self):
        """Initialize metrics collector."""
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._drop_reasons: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._start_time = time.time()

        # Initialize standard counters to 0 for consistent reporting
        self._init_standard_counters()

    def _init_standard_counters(self):
        """Initialize standard counter keys."""
        standard_counters = [
            'probes_sent',
            'probes_ok',
            'sync_cycles',
            'corrections_applied',
            'calibration_runs',
            'frames_processed',
            'motion_triggers',
            'gate_events',
        ]

        with self._lock:
            for counter in standard_counters:
                if counter not in self._counters:
                    self._counters[counter] = 0

            # Initialize all drop reasons to 0
            for reason in self.DROP_REASONS:
                if reason not in self._drop_reasons:
                    self._drop_reasons[reason] = 0

    def increment(self, counter_name: str, value: int = 1):
        """
        Increment a counter by value.

        Args:
            counter_name: Name of counter to increment
            value: Amount to increment (default 1)
        """
        with self._lock:
            self._counters[counter_name] += value

    def increment_drop(self, reason: str, value: int = 1):
        """
        Increment drop counter for specific reason.

        Args:
            reason: Drop reason code (should be in DROP_REASONS)
            value: Amount to increment (default 1)
        """
        if reason not in self.DROP_REASONS:
            # Log unknown reason but still count it
            logger.warning(f"Unknown drop reason '{reason}'")

        with self._lock:
            self._drop_reasons[reason] += value
            self._counters['samples_dropped'] += value

    def get_counter(self, counter_name: str) -> int:
        """
        Get current value of a counter.

        Args:
            counter_name: Name of counter

        Returns:
            Current counter value
        """
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_drop_count(self, reason: str) -> int:
        """Get current count for a drop reason."""
        with self._lock:
            return self._drop_reasons.get(reason, 0)

    def record_histogram(self, histogram_name: str, value: float, max_samples: int = 10000):
        """
        Record a value in a histogram.

        Args:
            histogram_name: Name of histogram
            value: Value to record
            max_samples: Maximum samples to keep (prevents unbounded growth)
        """
        with self._lock:
            samples = self._histograms[histogram_name]
            samples.append(value)

            # Keep only recent samples to bound memory
            if len(samples) > max_samples:
                self._histograms[histogram_name] = samples[-max_samples//2:]

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Summarise a histogram.

        Args:
            histogram_name: Name of histogram

        Returns:
            Dict with count, min, max, mean, std, median, p95, p99;
            None if nothing was recorded
        """
        with self._lock:
            samples = np.array(self._histograms.get(histogram_name, []), dtype=float)

        if samples.size == 0:
            return None

        median, p95, p99 = np.percentile(samples, [50, 95, 99])
        return {
            'count': int(samples.size),
            'min': float(samples.min()),
            'max': float(samples.max()),
            'mean': float(samples.mean()),
            'std': float(samples.std()),
            'median': float(median),
            'p95': float(p95),
            'p99': float(p99),
        }

    def snapshot(self) -> CounterSnapshot:
        """Copy of every counter, drop reason and histogram."""
        with self._lock:
            return CounterSnapshot(
                timestamp=time.time(),
                counters=dict(self._counters),
                drop_reasons=dict(self._drop_reasons),
                histograms={k: list(v) for k, v in self._histograms.items()},
            )

    def reset(self):
        """Zero everything (tests, new session)."""
        with self._lock:
            self._counters.clear()
            self._drop_reasons.clear()
            self._histograms.clear()
            self._start_time = time.time()
        self._init_standard_counters()

    def get_uptime(self) -> float:
        """Seconds since creation or the last reset."""
        return time.time() - self._start_time

    def print_summary(self):
        """Print counters, drop reasons and timing histograms."""
        snapshot = self.snapshot()

        print("\n" + "=" * 70)
        print(f"  TIMING METRICS (uptime: {self.get_uptime():.1f}s)")
        print("=" * 70)

        print("\nCOUNTERS:")
        for name, value in sorted(snapshot.counters.items()):
            if value:
                print(f"  {name:30s}: {value:8d}")

        probes = snapshot.counters.get('probes_sent', 0)
        if snapshot.total_dropped():
            print(f"\nDROPS ({snapshot.drop_rate(probes):.1f}% of {probes} probes):")
            for reason, count in sorted(snapshot.drop_reasons.items()):
                if count:
                    print(f"  {reason:30s}: {count:8d}")

        for name in sorted(snapshot.histograms):
            stats = self.get_histogram_stats(name)
            if stats:
                print(f"\n{name}: n={stats['count']} mean={stats['mean']:.2f} "
                      f"std={stats['std']:.2f} p95={stats['p95']:.2f} max={stats['max']:.2f}")

        print("=" * 70 + "\n")
