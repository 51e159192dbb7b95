"""
Domain Module: race windows and the device session.

Implements:
- Race windowing of the gate event stream
- Split, velocity and acceleration metrics
- Topic handling for the shared relay
"""

from .race_aggregator import (
    RaceAggregator,
    RaceConfig,
    Race,
    Split,
    RaceCue,
    cue_for_count,
    gate_label,
    window_races,
)
from .race_session import (
    RaceSession,
    CueCallback,
)

__all__ = [
    # Races
    'RaceAggregator',
    'RaceConfig',
    'Race',
    'Split',
    'RaceCue',
    'cue_for_count',
    'gate_label',
    'window_races',
    # Session
    'RaceSession',
    'CueCallback',
]
