"""
Calibration Stats Snapshot Schema.

Aggregate result of one calibration run: network link quality, local
scheduler lag and capture cadence. Snapshots are immutable and replaced as a
whole after each run; consumers never see a half-updated snapshot.
"""

from dataclasses import dataclass
from enum import IntEnum


class CalibrationHealth(IntEnum):
    """Coarse timing-accuracy grade shown next to the calibration indicator."""
    GOOD = 0     # Estimated error below 30ms
    FAIR = 1     # Estimated error below 100ms
    POOR = 2     # Anything worse


# Health thresholds on stability_ms
GOOD_STABILITY_MS = 30.0
FAIR_STABILITY_MS = 100.0


@dataclass(frozen=True)
class CalibrationStats:
    """
    Calibration snapshot.

    Attributes:
        offset_ms: Reference minus local clock measured during calibration (ms)
        round_trip_ms: Mean round-trip time to the reference source (ms)
        jitter_std_ms: Standard deviation of round-trip time (ms)
        upload_latency_ms: Device -> reference one-way latency (ms)
        download_latency_ms: Reference -> device one-way latency (ms)
        frame_rate: Capture frames per second (0 if no capture source)
        frame_duration_ms: 1000 / frame_rate (0 if no capture source)
        system_lag_ms: Mean excess delay of a fixed local wait (ms)
        is_calibrated: True once a calibration run has published
    """

    offset_ms: float = 0.0
    round_trip_ms: float = 0.0
    jitter_std_ms: float = 0.0
    upload_latency_ms: float = 0.0
    download_latency_ms: float = 0.0
    frame_rate: float = 0.0
    frame_duration_ms: float = 0.0
    system_lag_ms: float = 0.0
    is_calibrated: bool = False

    @property
    def has_capture_cadence(self) -> bool:
        """True if a frame cadence was measured."""
        return self.frame_rate > 0 and self.frame_duration_ms > 0

    @property
    def stability_ms(self) -> float:
        """
        Estimated timing error budget (ms).

        Sum of network jitter, scheduler lag and the half-frame ambiguity of
        a capture source. The offset itself is a correction, not an error,
        so it does not contribute.
        """
        half_frame = self.frame_duration_ms / 2.0 if self.frame_rate > 0 else 0.0
        return self.jitter_std_ms + self.system_lag_ms + half_frame

    @property
    def health(self) -> CalibrationHealth:
        """Grade stability_ms into GOOD / FAIR / POOR."""
        stability = self.stability_ms
        if stability < GOOD_STABILITY_MS:
            return CalibrationHealth.GOOD
        if stability < FAIR_STABILITY_MS:
            return CalibrationHealth.FAIR
        return CalibrationHealth.POOR

    @property
    def status_label(self) -> str:
        """Indicator text for the calibration status pill."""
        return "CALIBRATED" if self.is_calibrated else "UNCALIBRATED"

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'offset_ms': self.offset_ms,
            'round_trip_ms': self.round_trip_ms,
            'jitter_std_ms': self.jitter_std_ms,
            'upload_latency_ms': self.upload_latency_ms,
            'download_latency_ms': self.download_latency_ms,
            'frame_rate': self.frame_rate,
            'frame_duration_ms': self.frame_duration_ms,
            'system_lag_ms': self.system_lag_ms,
            'is_calibrated': self.is_calibrated,
            'stability_ms': self.stability_ms,
            'health': self.health.name,
        }


def create_uncalibrated_stats() -> CalibrationStats:
    """
    Create the default snapshot used before any calibration run.

    Returns:
        CalibrationStats with zero values and is_calibrated=False
    """
    return CalibrationStats()
