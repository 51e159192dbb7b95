"""
Gate Event Message Schema.

A gate event is one trigger (button press or camera motion) stamped in unified
time. Events are created once, at the moment of the trigger, and never edited
afterwards. Also defines the topic names and payload shapes exchanged over the
transport.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List


# Transport topics
TOPIC_GATE_TRIGGER = 'gate-trigger'
TOPIC_CLEAR_EVENTS = 'clear-events'
TOPIC_CONFIG_CHANGE = 'config-change'
TOPIC_DISTANCE_CHANGE = 'distance-change'

MIN_GATE_COUNT = 2


class EventSource(Enum):
    """What produced the trigger."""
    MANUAL = 'manual'
    MOTION = 'motion'


@dataclass(frozen=True)
class MotionMetadata:
    """
    Latency metadata attached to a motion-sourced trigger.

    Attributes:
        processing_latency: Time spent computing the frame delta (ms)
        camera_latency: Frame delivery time minus hardware capture time (ms),
            None when the capture source exposes no capture timestamp
    """

    processing_latency: Optional[float] = None
    camera_latency: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'processing_latency': self.processing_latency,
            'camera_latency': self.camera_latency,
        }


@dataclass(frozen=True)
class GateEvent:
    """
    One stamped gate trigger.

    Attributes:
        timestamp: Unified time of the trigger (ms)
        source: EventSource.MANUAL or EventSource.MOTION
        metadata: Motion latency metadata (motion events only, local use)
    """

    timestamp: float
    source: EventSource
    metadata: Optional[MotionMetadata] = None

    def __post_init__(self):
        """Validate event."""
        if not isinstance(self.source, EventSource):
            raise ValueError(f"Unknown event source: {self.source!r}")
        if not _is_finite_number(self.timestamp):
            raise ValueError(f"Timestamp must be a finite number: {self.timestamp!r}")

    @property
    def is_motion(self) -> bool:
        """Check if the event came from the motion detector."""
        return self.source == EventSource.MOTION

    def to_payload(self) -> dict:
        """Build the gate-trigger topic payload."""
        return {
            'timestamp': self.timestamp,
            'source': self.source.value,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> 'GateEvent':
        """
        Parse a gate-trigger topic payload.

        Args:
            payload: {"timestamp": number, "source": "manual" | "motion"}

        Returns:
            GateEvent

        Raises:
            ValueError: If the payload is malformed
        """
        if not isinstance(payload, dict):
            raise ValueError(f"gate-trigger payload must be an object: {payload!r}")

        timestamp = payload.get('timestamp')
        if not _is_finite_number(timestamp):
            raise ValueError(f"gate-trigger timestamp invalid: {timestamp!r}")

        try:
            source = EventSource(payload.get('source', EventSource.MANUAL.value))
        except ValueError:
            raise ValueError(f"gate-trigger source invalid: {payload.get('source')!r}")

        return cls(timestamp=float(timestamp), source=source)


def parse_gate_count(payload: dict) -> int:
    """
    Parse a config-change payload.

    Args:
        payload: {"count": integer >= 2}

    Returns:
        Gate count

    Raises:
        ValueError: If count is missing, not an integer, or below 2
    """
    if not isinstance(payload, dict):
        raise ValueError(f"config-change payload must be an object: {payload!r}")

    count = payload.get('count')
    if isinstance(count, bool) or not isinstance(count, (int, float)):
        raise ValueError(f"config-change count invalid: {count!r}")
    if count != int(count):
        raise ValueError(f"config-change count must be an integer: {count!r}")
    if count < MIN_GATE_COUNT:
        raise ValueError(f"config-change count must be >= {MIN_GATE_COUNT}: {count}")

    return int(count)


def parse_distances(payload: dict) -> List[float]:
    """
    Parse a distance-change payload.

    Args:
        payload: {"distances": number[]}

    Returns:
        Distances in meters (index i = gate i+1)

    Raises:
        ValueError: If distances is missing or holds non-numbers
    """
    if not isinstance(payload, dict):
        raise ValueError(f"distance-change payload must be an object: {payload!r}")

    distances = payload.get('distances')
    if not isinstance(distances, (list, tuple)):
        raise ValueError(f"distance-change distances invalid: {distances!r}")

    parsed = []
    for d in distances:
        if not _is_finite_number(d) or d < 0:
            raise ValueError(f"distance-change entry invalid: {d!r}")
        parsed.append(float(d))

    return parsed


def _is_finite_number(value) -> bool:
    """True for int/float values that are not bool, NaN or infinite."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)
