"""
Timing Module: shared clock and event timestamps.

- Reference time client (round-trip probes)
- Clock offset estimation (startup burst + periodic drift correction)
- Local jitter and capture cadence calibration
- Event timestamp compensation
- GNSS-disciplined time
"""

from .reference_client import (
    TimeSource,
    EchoReply,
    ReferenceTimeClient,
    ProbeError,
)
from .offset_strategies import (
    LinkEstimate,
    METHOD_ASYMMETRIC,
    METHOD_SYMMETRIC,
    burst_mean_offset,
    filter_rtt_outliers,
    best_rtt_sample,
    clamp_correction,
    smoothed_offset,
    estimate_asymmetric,
    estimate_symmetric,
    first_valid,
)
from .offset_estimator import (
    ClockOffsetEstimator,
    OffsetEstimatorConfig,
    OffsetSnapshot,
    SyncResult,
    SyncStatus,
    create_default_estimator,
)
from .jitter_profiler import (
    CalibrationConfig,
    CalibrationRunner,
    CaptureUnavailableError,
    CalibrationCancelledError,
    measure_system_lag,
    measure_frame_rate,
)
from .compensator import (
    compensate_timestamp,
    capture_latency,
    EventStamper,
)
from .gnss_time import (
    GnssTimeSample,
    GnssTimeState,
    GnssTimeTracker,
)

__all__ = [
    # Reference client
    'TimeSource',
    'EchoReply',
    'ReferenceTimeClient',
    'ProbeError',
    # Strategies
    'LinkEstimate',
    'METHOD_ASYMMETRIC',
    'METHOD_SYMMETRIC',
    'burst_mean_offset',
    'filter_rtt_outliers',
    'best_rtt_sample',
    'clamp_correction',
    'smoothed_offset',
    'estimate_asymmetric',
    'estimate_symmetric',
    'first_valid',
    # Estimator
    'ClockOffsetEstimator',
    'OffsetEstimatorConfig',
    'OffsetSnapshot',
    'SyncResult',
    'SyncStatus',
    'create_default_estimator',
    # Calibration
    'CalibrationConfig',
    'CalibrationRunner',
    'CaptureUnavailableError',
    'CalibrationCancelledError',
    'measure_system_lag',
    'measure_frame_rate',
    # Compensation
    'compensate_timestamp',
    'capture_latency',
    'EventStamper',
    # GNSS
    'GnssTimeSample',
    'GnssTimeState',
    'GnssTimeTracker',
]
