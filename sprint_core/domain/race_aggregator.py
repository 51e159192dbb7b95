"""
Race Event Aggregator.

Turns the unordered stream of GateEvents into races:
1. Sort all events by unified timestamp
2. Chunk into consecutive groups of gate_count
3. Complete groups are finished races; a trailing remainder is the race in
   progress (at most one)

Races are derived views, recomputed from the event log. The log is
append-only between clear() / set_gate_count() calls; derivation is cached per
log version.

Per-split metrics (distances in metres, index i = gate i+1):
    split_ms  = t_i - t_0
    delta_ms  = t_i - t_{i-1}
    velocity  = (d_i - d_{i-1}) / delta_s          with d_0 = 0
    accel     = (v_i - v_{i-1}) / delta_s          with v_0 = 0
A missing distance or a non-positive delta gives None.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from sprint_core.proto import GateEvent, MIN_GATE_COUNT
from sprint_core.metrics import get_metrics

logger = logging.getLogger(__name__)


@dataclass
class RaceConfig:
    """
    Configuration for race windowing.

    Attributes:
        gate_count: Gates per race (start + splits + finish)
        distances: Distance of gate i+1 from the start line (m)
    """

    gate_count: int = 2
    distances: Tuple[float, ...] = ()

    def __post_init__(self):
        """Validate configuration."""
        assert self.gate_count >= MIN_GATE_COUNT, \
            f"gate_count must be at least {MIN_GATE_COUNT}"
        assert all(d >= 0 for d in self.distances), "distances must be non-negative"


class RaceCue(Enum):
    """Role of a trigger within its race."""
    START = 'start'
    SPLIT = 'split'
    FINISH = 'finish'


@dataclass(frozen=True)
class Split:
    """
    One gate crossing within a race.

    Attributes:
        gate_index: Position in the race (0 = start)
        label: START, "<d>m", FINISH or "SPLIT i"
        event: The GateEvent
        split_ms: Time since the start event (ms)
        delta_ms: Time since the previous gate (ms), None for the start
        distance_m: Distance from the start line (m), None if not configured
        velocity: Segment velocity (m/s), None if not computable
        acceleration: Segment acceleration (m/s^2), None if not computable
    """

    gate_index: int
    label: str
    event: GateEvent
    split_ms: float
    delta_ms: Optional[float] = None
    distance_m: Optional[float] = None
    velocity: Optional[float] = None
    acceleration: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'gate_index': self.gate_index,
            'label': self.label,
            'timestamp': self.event.timestamp,
            'source': self.event.source.value,
            'split_ms': self.split_ms,
            'delta_ms': self.delta_ms,
            'distance_m': self.distance_m,
            'velocity': self.velocity,
            'acceleration': self.acceleration,
        }


@dataclass(frozen=True)
class Race:
    """
    One window of gate_count consecutive events.

    Attributes:
        index: Race number (0-based, oldest first)
        gate_count: Configured gates per race
        events: Events in timestamp order
        splits: Per-gate metrics, same order as events
        elapsed_ms: Finish minus start when complete; live time since the
            start (or last event) while running
    """

    index: int
    gate_count: int
    events: Tuple[GateEvent, ...]
    splits: Tuple[Split, ...]
    elapsed_ms: float

    @property
    def is_complete(self) -> bool:
        return len(self.events) == self.gate_count

    @property
    def start_time(self) -> float:
        return self.events[0].timestamp

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'index': self.index,
            'gate_count': self.gate_count,
            'is_complete': self.is_complete,
            'elapsed_ms': self.elapsed_ms,
            'splits': [s.to_dict() for s in self.splits],
        }


def distance_at(distances: Sequence[float], gate_index: int) -> Optional[float]:
    """Distance of a gate from the start (start is 0), None if not configured."""
    if gate_index == 0:
        return 0.0
    if gate_index - 1 < len(distances):
        return float(distances[gate_index - 1])
    return None


def gate_label(gate_index: int, gate_count: int, distances: Sequence[float]) -> str:
    """Display label of a gate."""
    if gate_index == 0:
        return 'START'
    distance = distance_at(distances, gate_index)
    if distance is not None:
        return f"{distance:g}m"
    if gate_index == gate_count - 1:
        return 'FINISH'
    return f"SPLIT {gate_index}"


def segment_velocity(events: Sequence[GateEvent], distances: Sequence[float],
                     i: int) -> Optional[float]:
    """Velocity over the segment ending at gate i (m/s); v_0 = 0."""
    if i == 0:
        return 0.0
    current = distance_at(distances, i)
    previous = distance_at(distances, i - 1)
    if current is None or previous is None:
        return None
    dt_s = (events[i].timestamp - events[i - 1].timestamp) / 1000.0
    if dt_s <= 0:
        return None
    return (current - previous) / dt_s


def segment_acceleration(events: Sequence[GateEvent], distances: Sequence[float],
                         i: int) -> Optional[float]:
    """Acceleration over the segment ending at gate i (m/s^2)."""
    if i == 0:
        return None
    velocity = segment_velocity(events, distances, i)
    previous_velocity = segment_velocity(events, distances, i - 1)
    if velocity is None or previous_velocity is None:
        return None
    dt_s = (events[i].timestamp - events[i - 1].timestamp) / 1000.0
    return (velocity - previous_velocity) / dt_s


def build_race(index: int, events: Sequence[GateEvent], gate_count: int,
               distances: Sequence[float], live_now_ms: Optional[float] = None) -> Race:
    """
    Derive one race from its (sorted) events.

    Args:
        index: Race number
        events: Events of this race in timestamp order
        gate_count: Gates per race
        distances: Gate distances (m)
        live_now_ms: Unified now, used for the elapsed time of a running race

    Returns:
        Race
    """
    start = events[0].timestamp
    splits = []
    for i, event in enumerate(events):
        splits.append(Split(
            gate_index=i,
            label=gate_label(i, gate_count, distances),
            event=event,
            split_ms=event.timestamp - start,
            delta_ms=None if i == 0 else event.timestamp - events[i - 1].timestamp,
            distance_m=distance_at(distances, i),
            velocity=None if i == 0 else segment_velocity(events, distances, i),
            acceleration=segment_acceleration(events, distances, i),
        ))

    if len(events) < gate_count and live_now_ms is not None:
        elapsed = live_now_ms - start
    else:
        elapsed = events[-1].timestamp - start

    return Race(
        index=index,
        gate_count=gate_count,
        events=tuple(events),
        splits=tuple(splits),
        elapsed_ms=elapsed,
    )


def window_races(events: Sequence[GateEvent], gate_count: int,
                 distances: Sequence[float] = (),
                 live_now_ms: Optional[float] = None) -> List[Race]:
    """
    Sort and chunk events into races.

    Args:
        events: Events in arrival order
        gate_count: Gates per race (>= 2)
        distances: Gate distances (m)
        live_now_ms: Unified now for the running race

    Returns:
        Races oldest first; only the last may be incomplete
    """
    ordered = sorted(events, key=lambda e: e.timestamp)
    return [
        build_race(i // gate_count, ordered[i:i + gate_count], gate_count, distances, live_now_ms)
        for i in range(0, len(ordered), gate_count)
    ]


class RaceAggregator:
    """
    Event log and race windows.

    Usage:
        aggregator = RaceAggregator(RaceConfig(gate_count=3))
        cue = aggregator.add_event(event)      # RaceCue.START / SPLIT / FINISH
        for race in aggregator.races(live_now_ms=estimator.now_ms()):
            print(race.index, race.elapsed_ms, race.is_complete)
    """

    def __init__(self, config: Optional[RaceConfig] = None):
        """
        Initialize aggregator.

        Args:
            config: Race configuration (uses defaults if None)
        """
        config = config or RaceConfig()
        self.metrics = get_metrics()

        self._lock = threading.Lock()
        self._events: List[GateEvent] = []
        self._gate_count = config.gate_count
        self._distances: Tuple[float, ...] = tuple(float(d) for d in config.distances)

        # Derivation cache keyed by log version
        self._version = 0
        self._cached_version = -1
        self._cached_races: List[Race] = []

    @property
    def gate_count(self) -> int:
        return self._gate_count

    @property
    def distances(self) -> Tuple[float, ...]:
        return self._distances

    @property
    def events(self) -> Tuple[GateEvent, ...]:
        """Events in arrival order."""
        with self._lock:
            return tuple(self._events)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def add_event(self, event: GateEvent) -> RaceCue:
        """
        Append an event.

        Returns:
            Cue for the new event by arrival count
        """
        with self._lock:
            self._events.append(event)
            self._version += 1
            count = len(self._events)
            gate_count = self._gate_count

        self.metrics.increment('gate_events')
        return cue_for_count(count, gate_count)

    def clear(self):
        """Drop all events."""
        with self._lock:
            self._events.clear()
            self._version += 1
        logger.info("Race events cleared")

    def set_gate_count(self, gate_count: int):
        """
        Change gates per race; clears the log.

        Raises:
            ValueError: If gate_count < 2 or not an integer
        """
        if isinstance(gate_count, bool) or not isinstance(gate_count, int) \
                or gate_count < MIN_GATE_COUNT:
            raise ValueError(f"gate_count must be an integer >= {MIN_GATE_COUNT}, "
                             f"got {gate_count!r}")
        with self._lock:
            self._gate_count = gate_count
            self._events.clear()
            self._version += 1
        logger.info(f"Gate count set to {gate_count}, events cleared")

    def set_distances(self, distances: Sequence[float]):
        """
        Set gate distances (index i = gate i+1).

        Raises:
            ValueError: If any distance is negative
        """
        if any(d < 0 for d in distances):
            raise ValueError(f"distances must be non-negative, got {list(distances)}")
        with self._lock:
            self._distances = tuple(float(d) for d in distances)
            self._version += 1
        logger.info(f"Distances set to {list(self._distances)}")

    def races(self, live_now_ms: Optional[float] = None) -> List[Race]:
        """
        Current race windows, oldest first.

        Args:
            live_now_ms: Unified now; when given, a running race reports its
                live elapsed time (not cached)

        Returns:
            List of Race
        """
        with self._lock:
            if live_now_ms is None and self._cached_version == self._version:
                return list(self._cached_races)
            version = self._version
            events = list(self._events)
            gate_count = self._gate_count
            distances = self._distances

        races = window_races(events, gate_count, distances, live_now_ms)

        if live_now_ms is None:
            with self._lock:
                if self._version == version:
                    self._cached_races = races
                    self._cached_version = version
        return list(races)

    def current_race(self, live_now_ms: Optional[float] = None) -> Optional[Race]:
        """The race in progress, None if the last race is complete."""
        races = self.races(live_now_ms)
        if races and not races[-1].is_complete:
            return races[-1]
        return None

    def progress(self) -> int:
        """Gates crossed in the race in progress (0 when none is running)."""
        with self._lock:
            return len(self._events) % self._gate_count


def cue_for_count(count: int, gate_count: int) -> RaceCue:
    """
    Cue for the count-th trigger (1-based).

    position = (count - 1) mod gate_count; 0 is the start, gate_count - 1 the
    finish, anything else a split.
    """
    position = (count - 1) % gate_count
    if position == 0:
        return RaceCue.START
    if position == gate_count - 1:
        return RaceCue.FINISH
    return RaceCue.SPLIT
