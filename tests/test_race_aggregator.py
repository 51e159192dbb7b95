"""
Unit tests for race windowing and split metrics.

Tests cover:
- Sorting and chunking into races
- Gate count changes and clearing
- Split, velocity and acceleration metrics
- Gate labels and cues
- Derivation cache invalidation
"""

import random

import pytest

from sprint_core.proto import GateEvent, EventSource
from sprint_core.domain import (
    RaceAggregator,
    RaceConfig,
    RaceCue,
    cue_for_count,
    gate_label,
    window_races,
)
from sprint_core.metrics import get_metrics


def events_at(*timestamps, source=EventSource.MANUAL):
    return [GateEvent(float(t), source) for t in timestamps]


# =============================================================================
# Windowing
# =============================================================================


class TestWindowing:
    """Tests for chunking events into races."""

    def test_seven_events_three_gates(self):
        """7 events with 3 gates: two complete races and one partial."""
        events = events_at(*range(1000, 8000, 1000))
        shuffled = list(events)
        random.Random(4).shuffle(shuffled)

        aggregator = RaceAggregator(RaceConfig(gate_count=3))
        for event in shuffled:
            aggregator.add_event(event)

        races = aggregator.races()

        assert [len(r.events) for r in races] == [3, 3, 1]
        assert [r.is_complete for r in races] == [True, True, False]
        assert [e.timestamp for e in races[0].events] == [1000.0, 2000.0, 3000.0]
        assert [e.timestamp for e in races[1].events] == [4000.0, 5000.0, 6000.0]
        assert races[2].events[0].timestamp == 7000.0
        assert [r.index for r in races] == [0, 1, 2]

    def test_only_last_partial(self):
        """At most one race is incomplete and it is the last."""
        for n in range(0, 12):
            races = window_races(events_at(*range(n)), gate_count=4)
            incomplete = [r for r in races if not r.is_complete]
            assert len(incomplete) <= 1
            if incomplete:
                assert incomplete[0] is races[-1]

    def test_elapsed(self):
        """Complete races report finish - start; running ones use live now."""
        aggregator = RaceAggregator(RaceConfig(gate_count=2))
        for event in events_at(1000, 3500, 5000):
            aggregator.add_event(event)

        complete, running = aggregator.races(live_now_ms=6200.0)

        assert complete.elapsed_ms == pytest.approx(2500.0)
        assert running.elapsed_ms == pytest.approx(1200.0)
        assert aggregator.races()[1].elapsed_ms == 0.0

    def test_progress_and_current(self):
        """Progress counts gates crossed in the running race."""
        aggregator = RaceAggregator(RaceConfig(gate_count=3))
        assert aggregator.progress() == 0
        assert aggregator.current_race() is None

        for event in events_at(1, 2, 3, 4):
            aggregator.add_event(event)

        assert aggregator.progress() == 1
        assert aggregator.current_race().index == 1


class TestConfigChanges:
    """Tests for clear, gate count and distances."""

    def test_set_gate_count_clears(self):
        """Changing the gate count empties the log."""
        aggregator = RaceAggregator()
        for event in events_at(1, 2, 3):
            aggregator.add_event(event)

        aggregator.set_gate_count(4)

        assert aggregator.gate_count == 4
        assert len(aggregator) == 0
        assert aggregator.races() == []

    @pytest.mark.parametrize("count", [1, 0, -2, 2.5, True])
    def test_invalid_gate_count(self, count):
        """Gate counts below 2 or non-integers are rejected."""
        aggregator = RaceAggregator()
        aggregator.add_event(GateEvent(1.0, EventSource.MANUAL))

        with pytest.raises(ValueError):
            aggregator.set_gate_count(count)
        assert len(aggregator) == 1

    def test_clear(self):
        """clear() drops every event."""
        aggregator = RaceAggregator()
        aggregator.add_event(GateEvent(1.0, EventSource.MANUAL))
        aggregator.clear()
        assert aggregator.races() == []

    def test_cache_invalidated(self):
        """Appends after a derivation show up in the next one."""
        aggregator = RaceAggregator(RaceConfig(gate_count=2))
        aggregator.add_event(GateEvent(1.0, EventSource.MANUAL))
        first = aggregator.races()

        aggregator.add_event(GateEvent(2.0, EventSource.MANUAL))
        second = aggregator.races()

        assert not first[0].is_complete
        assert second[0].is_complete

    def test_distances_change_metrics(self):
        """Setting distances recomputes velocities."""
        aggregator = RaceAggregator(RaceConfig(gate_count=2))
        for event in events_at(0, 2000):
            aggregator.add_event(event)
        assert aggregator.races()[0].splits[1].velocity is None

        aggregator.set_distances([20])
        assert aggregator.races()[0].splits[1].velocity == pytest.approx(10.0)

    def test_negative_distance_rejected(self):
        """Distances must be non-negative."""
        with pytest.raises(ValueError):
            RaceAggregator().set_distances([10, -5])


# =============================================================================
# Split Metrics
# =============================================================================


class TestSplitMetrics:
    """Tests for split times, velocity and acceleration."""

    @pytest.fixture
    def race(self):
        aggregator = RaceAggregator(RaceConfig(gate_count=4, distances=(10, 20, 30)))
        for event in events_at(0, 1000, 1900, 2900):
            aggregator.add_event(event)
        return aggregator.races()[0]

    def test_split_times(self, race):
        """Split is time since start, delta time since previous gate."""
        assert [s.split_ms for s in race.splits] == [0.0, 1000.0, 1900.0, 2900.0]
        assert [s.delta_ms for s in race.splits] == [None, 1000.0, 900.0, 1000.0]

    def test_velocities(self, race):
        """v = 10, 11.11, 10.0 m/s."""
        velocities = [s.velocity for s in race.splits[1:]]
        assert velocities == [pytest.approx(10.0), pytest.approx(100.0 / 9.0), pytest.approx(10.0)]

    def test_accelerations(self, race):
        """a_1 from rest; a_2 = (11.11 - 10) / 0.9 = 1.23."""
        assert race.splits[0].acceleration is None
        assert race.splits[1].acceleration == pytest.approx(10.0)
        assert race.splits[2].acceleration == pytest.approx(1.2345679, rel=1e-5)
        assert race.splits[3].acceleration == pytest.approx(-100.0 / 90.0)

    def test_missing_distance(self):
        """Gates without a configured distance have no velocity."""
        races = window_races(events_at(0, 1000, 2000), gate_count=3, distances=[10])
        splits = races[0].splits

        assert splits[1].velocity == pytest.approx(10.0)
        assert splits[2].velocity is None
        assert splits[2].acceleration is None

    def test_zero_time_delta(self):
        """Simultaneous gates give no velocity instead of dividing by zero."""
        races = window_races(events_at(500, 500), gate_count=2, distances=[10])
        assert races[0].splits[1].velocity is None
        assert races[0].splits[1].acceleration is None

    def test_to_dict(self, race):
        """Serialized race carries splits with labels."""
        data = race.to_dict()
        assert data['is_complete'] is True
        assert [s['label'] for s in data['splits']] == ['START', '10m', '20m', '30m']


# =============================================================================
# Labels and Cues
# =============================================================================


class TestLabelsAndCues:
    """Tests for gate labels and race cues."""

    def test_labels_without_distances(self):
        """START, SPLIT i and FINISH."""
        labels = [gate_label(i, 4, []) for i in range(4)]
        assert labels == ['START', 'SPLIT 1', 'SPLIT 2', 'FINISH']

    def test_labels_with_distances(self):
        """Configured distances replace split names."""
        assert gate_label(1, 3, [12.5]) == '12.5m'
        assert gate_label(2, 3, [12.5]) == 'FINISH'

    def test_cues_cycle(self):
        """Position (n - 1) mod gate_count picks the cue."""
        cues = [cue_for_count(n, 3) for n in range(1, 8)]
        assert cues == [
            RaceCue.START, RaceCue.SPLIT, RaceCue.FINISH,
            RaceCue.START, RaceCue.SPLIT, RaceCue.FINISH,
            RaceCue.START,
        ]

    def test_two_gates_no_split(self):
        """With two gates every second trigger finishes."""
        assert [cue_for_count(n, 2) for n in (1, 2, 3)] == [
            RaceCue.START, RaceCue.FINISH, RaceCue.START
        ]

    def test_add_event_returns_cue(self):
        """add_event reports the cue and counts the event."""
        aggregator = RaceAggregator(RaceConfig(gate_count=2))
        assert aggregator.add_event(GateEvent(1.0, EventSource.MANUAL)) == RaceCue.START
        assert aggregator.add_event(GateEvent(2.0, EventSource.MOTION)) == RaceCue.FINISH
        assert get_metrics().get_counter('gate_events') == 2
