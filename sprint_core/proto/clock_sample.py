"""
Clock Sample Schemas.

Raw products of one round trip against the reference time source. Samples are
immutable: the offset estimator consumes them and never edits them.

Two shapes are supported:
- ClockSample: the reference source only returns "server now" (symmetric
  latency assumption, 3 timestamps)
- EchoSample: the reference source echoes its receive/send times
  (4-timestamp exchange, upload and download latency separable)

All times are milliseconds. Local times come from the device monotonic clock,
reference times from the reference source.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ClockSample:
    """
    Result of one symmetric round-trip probe.

    Attributes:
        local_send_time: Local monotonic time the probe was sent (ms)
        local_receive_time: Local monotonic time the reply arrived (ms)
        reference_time: Reference "now" carried in the reply (ms)
        round_trip_time: local_receive_time - local_send_time (ms)
    """

    local_send_time: float
    local_receive_time: float
    reference_time: float
    round_trip_time: float

    def __post_init__(self):
        """Validate sample."""
        if self.round_trip_time < 0:
            raise ValueError(f"Round-trip time cannot be negative: {self.round_trip_time}")

    @property
    def estimated_offset(self) -> float:
        """
        Offset implied by this sample, assuming equal up/down latency.

        The reference time was stamped roughly half a round trip before the
        reply arrived, so reference "now" at receive time is
        reference_time + rtt/2.
        """
        return self.reference_time + self.round_trip_time / 2.0 - self.local_receive_time

    @classmethod
    def from_times(cls, local_send_time: float, local_receive_time: float,
                   reference_time: float) -> 'ClockSample':
        """Build a sample, deriving the round-trip time."""
        return cls(
            local_send_time=local_send_time,
            local_receive_time=local_receive_time,
            reference_time=reference_time,
            round_trip_time=local_receive_time - local_send_time,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'local_send_time': self.local_send_time,
            'local_receive_time': self.local_receive_time,
            'reference_time': self.reference_time,
            'round_trip_time': self.round_trip_time,
            'estimated_offset': self.estimated_offset,
        }


@dataclass(frozen=True)
class EchoSample:
    """
    Result of one 4-timestamp echo exchange.

    Attributes:
        t1: Local send time (local clock, ms)
        t2: Reference receive time (reference clock, ms)
        t3: Reference send time (reference clock, ms)
        t4: Local receive time (local clock, ms)
    """

    t1: float
    t2: float
    t3: float
    t4: float

    @property
    def round_trip_time(self) -> float:
        """Network round trip, excluding reference-side processing."""
        return (self.t4 - self.t1) - (self.t3 - self.t2)

    @property
    def clock_offset(self) -> float:
        """Reference minus local clock."""
        return ((self.t2 - self.t1) + (self.t3 - self.t4)) / 2.0

    @property
    def upload_latency(self) -> float:
        """One-way latency device -> reference (ms)."""
        return (self.t2 - self.t1) - self.clock_offset

    @property
    def download_latency(self) -> float:
        """One-way latency reference -> device (ms)."""
        return (self.t4 - self.t3) + self.clock_offset

    @property
    def has_negative_latency(self) -> bool:
        """True if either one-way latency came out negative."""
        return self.upload_latency < 0 or self.download_latency < 0

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            't1': self.t1,
            't2': self.t2,
            't3': self.t3,
            't4': self.t4,
            'round_trip_time': self.round_trip_time,
            'clock_offset': self.clock_offset,
            'upload_latency': self.upload_latency,
            'download_latency': self.download_latency,
        }
