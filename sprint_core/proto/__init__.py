"""
Protocol Module: Message schemas.

- Clock samples from the reference time source
- Calibration snapshots
- Gate events and transport topic payloads
"""

from .clock_sample import (
    ClockSample,
    EchoSample,
)
from .calibration_stats import (
    CalibrationStats,
    CalibrationHealth,
    create_uncalibrated_stats,
)
from .gate_event import (
    GateEvent,
    EventSource,
    MotionMetadata,
    parse_gate_count,
    parse_distances,
    TOPIC_GATE_TRIGGER,
    TOPIC_CLEAR_EVENTS,
    TOPIC_CONFIG_CHANGE,
    TOPIC_DISTANCE_CHANGE,
    MIN_GATE_COUNT,
)

__all__ = [
    # Clock samples
    'ClockSample',
    'EchoSample',
    # Calibration
    'CalibrationStats',
    'CalibrationHealth',
    'create_uncalibrated_stats',
    # Gate events
    'GateEvent',
    'EventSource',
    'MotionMetadata',
    'parse_gate_count',
    'parse_distances',
    'TOPIC_GATE_TRIGGER',
    'TOPIC_CLEAR_EVENTS',
    'TOPIC_CONFIG_CHANGE',
    'TOPIC_DISTANCE_CHANGE',
    'MIN_GATE_COUNT',
]
