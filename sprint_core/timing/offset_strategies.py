"""
Offset Estimation Strategies.

Pure functions that turn raw round-trip samples into offset estimates. They
hold no state and have no side effects, so the estimator can compose them and
tests can exercise each one alone.

Strategies:
- burst_mean_offset: mean of per-sample offsets (startup burst)
- best_rtt_sample + smoothed_offset: lowest-RTT sample, clamped EMA step
  (periodic drift correction)
- estimate_asymmetric: 4-timestamp exchange, RTT-median representative
- estimate_symmetric: "server now" samples, upload = download = RTT/2
- first_valid: run an ordered fallback chain, first non-None result wins
"""

from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar

import numpy as np

from sprint_core.proto import ClockSample, EchoSample

T = TypeVar('T')

METHOD_ASYMMETRIC = 'asymmetric'
METHOD_SYMMETRIC = 'symmetric'


@dataclass(frozen=True)
class LinkEstimate:
    """
    Network link estimate reported by calibration.

    Attributes:
        offset_ms: Reference minus local clock (ms)
        round_trip_ms: Mean round-trip time of accepted samples (ms)
        jitter_std_ms: Standard deviation of accepted round-trip times (ms)
        upload_latency_ms: Mean device -> reference latency (ms)
        download_latency_ms: Mean reference -> device latency (ms)
        method: METHOD_ASYMMETRIC or METHOD_SYMMETRIC
        num_samples: Number of samples that survived filtering
    """

    offset_ms: float
    round_trip_ms: float
    jitter_std_ms: float
    upload_latency_ms: float
    download_latency_ms: float
    method: str
    num_samples: int


def burst_mean_offset(samples: Sequence[ClockSample]) -> Optional[float]:
    """
    Average the estimated offsets of a startup burst.

    Args:
        samples: Burst samples (failed probes already removed)

    Returns:
        Arithmetic mean of estimated offsets, None if no samples
    """
    if not samples:
        return None
    return sum(s.estimated_offset for s in samples) / len(samples)


def filter_rtt_outliers(samples: Iterable[ClockSample], max_rtt_ms: float) -> List[ClockSample]:
    """
    Drop samples whose round trip exceeds max_rtt_ms.

    Congested round trips break the equal up/down latency assumption.
    """
    return [s for s in samples if s.round_trip_time <= max_rtt_ms]


def best_rtt_sample(samples: Sequence[ClockSample], max_rtt_ms: float) -> Optional[ClockSample]:
    """
    Pick the lowest-RTT sample among those under the outlier threshold.

    Args:
        samples: Candidate samples
        max_rtt_ms: Outlier threshold (ms)

    Returns:
        Lowest-RTT surviving sample, None if every sample was rejected
    """
    survivors = filter_rtt_outliers(samples, max_rtt_ms)
    if not survivors:
        return None
    return min(survivors, key=lambda s: s.round_trip_time)


def clamp_correction(raw_correction: float, max_correction_ms: float) -> float:
    """Clamp a correction to [-max_correction_ms, +max_correction_ms]."""
    return max(-max_correction_ms, min(max_correction_ms, raw_correction))


def smoothed_offset(current_offset: float, measured_offset: float,
                    max_correction_ms: float, alpha: float) -> float:
    """
    One drift-correction step.

    The raw correction is clamped first, then scaled by the EMA factor:
        new = current + clamp(measured - current) * alpha

    Args:
        current_offset: Offset in use now (ms)
        measured_offset: Offset implied by the best sample (ms)
        max_correction_ms: Clamp on the raw correction (ms)
        alpha: Smoothing factor (0-1]

    Returns:
        New offset (ms)
    """
    clamped = clamp_correction(measured_offset - current_offset, max_correction_ms)
    return current_offset + clamped * alpha


def estimate_asymmetric(samples: Sequence[EchoSample],
                        max_rtt_ms: float = 500.0) -> Optional[LinkEstimate]:
    """
    Estimate offset and one-way latencies from 4-timestamp exchanges.

    Samples with a negative one-way latency or an RTT above max_rtt_ms are
    discarded. The representative offset comes from the RTT-median survivor;
    latencies are averaged over all survivors.

    Args:
        samples: Echo samples
        max_rtt_ms: Outlier threshold (ms)

    Returns:
        LinkEstimate, or None if no sample survived
    """
    survivors = [
        s for s in samples
        if not s.has_negative_latency and s.round_trip_time <= max_rtt_ms
    ]
    if not survivors:
        return None

    by_rtt = sorted(survivors, key=lambda s: s.round_trip_time)
    median_sample = by_rtt[len(by_rtt) // 2]

    rtts = np.array([s.round_trip_time for s in survivors])

    return LinkEstimate(
        offset_ms=median_sample.clock_offset,
        round_trip_ms=float(np.mean(rtts)),
        jitter_std_ms=float(np.std(rtts)),
        upload_latency_ms=float(np.mean([s.upload_latency for s in survivors])),
        download_latency_ms=float(np.mean([s.download_latency for s in survivors])),
        method=METHOD_ASYMMETRIC,
        num_samples=len(survivors),
    )


def estimate_symmetric(samples: Sequence[ClockSample],
                       max_rtt_ms: Optional[float] = None) -> Optional[LinkEstimate]:
    """
    Estimate offset from "server now" samples.

    The offset comes from the lowest-RTT sample; one-way latencies are taken
    as half the mean round trip.

    Args:
        samples: Symmetric samples
        max_rtt_ms: Optional outlier threshold (ms)

    Returns:
        LinkEstimate, or None if no sample survived
    """
    survivors = list(samples)
    if max_rtt_ms is not None:
        survivors = filter_rtt_outliers(survivors, max_rtt_ms)
    if not survivors:
        return None

    best = min(survivors, key=lambda s: s.round_trip_time)
    rtts = np.array([s.round_trip_time for s in survivors])
    mean_rtt = float(np.mean(rtts))

    return LinkEstimate(
        offset_ms=best.estimated_offset,
        round_trip_ms=mean_rtt,
        jitter_std_ms=float(np.std(rtts)),
        upload_latency_ms=mean_rtt / 2.0,
        download_latency_ms=mean_rtt / 2.0,
        method=METHOD_SYMMETRIC,
        num_samples=len(survivors),
    )


def first_valid(strategies: Sequence[Callable[[], Optional[T]]]) -> Optional[T]:
    """
    Run strategies in priority order and return the first non-None result.

    Args:
        strategies: Zero-argument callables, highest priority first

    Returns:
        First non-None result, None if all strategies came up empty
    """
    for strategy in strategies:
        result = strategy()
        if result is not None:
            return result
    return None
