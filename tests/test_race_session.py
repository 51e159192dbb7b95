"""
Unit tests for the device-side race session.

Tests cover:
- Trigger publish and relay to every device (sender included)
- Topic payload validation and drop counting
- Clear, gate count and distance changes applied on all devices
- Race cues
- Disconnected relay
- Camera frames through the motion detector into races
"""

import pytest

from sprint_core.proto import (
    CalibrationStats,
    EventSource,
    MotionMetadata,
    TOPIC_GATE_TRIGGER,
    TOPIC_CONFIG_CHANGE,
    TOPIC_DISTANCE_CHANGE,
)
from sprint_core.timing import ReferenceTimeClient, ClockOffsetEstimator, EventStamper
from sprint_core.capture import PushFrameSource
from sprint_core.detection import MotionTriggerDetector
from sprint_core.io import LocalHub
from sprint_core.domain import RaceAggregator, RaceConfig, RaceCue, RaceSession
from sprint_core.metrics import get_metrics

from conftest import solid_frame


def make_device(hub, clock, on_cue=None, connect=True):
    """One gate device on a local hub with a zero-offset estimator."""
    transport = hub.endpoint()
    estimator = ClockOffsetEstimator(ReferenceTimeClient(hub, clock_ms=clock))
    stamper = EventStamper(estimator, lambda: CalibrationStats())
    session = RaceSession(transport, RaceAggregator(RaceConfig(gate_count=2)), stamper,
                          on_cue=on_cue)
    session.start()
    if connect:
        transport.connect()
    return session


@pytest.fixture
def hub(fake_clock):
    return LocalHub(clock_ms=fake_clock)


# =============================================================================
# Relay
# =============================================================================


class TestTriggerRelay:
    """Tests for publishing triggers through the relay."""

    def test_trigger_reaches_all_devices(self, hub, fake_clock):
        """A trigger is applied on the sender and on every other device."""
        start_gate = make_device(hub, fake_clock)
        finish_gate = make_device(hub, fake_clock)

        event = start_gate.trigger_gate()

        assert event.timestamp == fake_clock.now
        assert start_gate.aggregator.events == (event,)
        assert finish_gate.aggregator.events == (event,)

    def test_race_completes_across_devices(self, hub, fake_clock):
        """Start on one device, finish on another: both see the same race."""
        start_gate = make_device(hub, fake_clock)
        finish_gate = make_device(hub, fake_clock)

        start_gate.trigger_gate()
        fake_clock.advance(6420.0)
        finish_gate.trigger_gate()

        for device in (start_gate, finish_gate):
            races = device.aggregator.races()
            assert len(races) == 1
            assert races[0].is_complete
            assert races[0].elapsed_ms == pytest.approx(6420.0)

    def test_cues(self, hub, fake_clock):
        """Every arriving trigger produces a cue."""
        cues = []
        device = make_device(hub, fake_clock, on_cue=lambda cue, event: cues.append(cue))

        device.trigger_gate()
        fake_clock.advance(10.0)
        device.trigger_gate()

        assert cues == [RaceCue.START, RaceCue.FINISH]

    def test_motion_trigger_published_without_metadata(self, hub, fake_clock):
        """Motion metadata stays local; the payload carries timestamp and source."""
        device = make_device(hub, fake_clock)
        seen = []
        observer = hub.endpoint()
        observer.subscribe(lambda topic, data: seen.append((topic, data)))
        observer.connect()

        device.trigger_gate(EventSource.MOTION,
                            MotionMetadata(processing_latency=1.0, camera_latency=9.0))

        topic, data = seen[0]
        assert topic == TOPIC_GATE_TRIGGER
        assert data == {'timestamp': pytest.approx(fake_clock.now - 10.0), 'source': 'motion'}

    def test_disconnected_drops_trigger(self, hub, fake_clock):
        """Triggers while disconnected are not stamped or applied."""
        device = make_device(hub, fake_clock, connect=False)

        assert device.trigger_gate() is None
        assert len(device.aggregator) == 0
        assert get_metrics().get_counter('events_stamped') == 0

    def test_stop_unsubscribes(self, hub, fake_clock):
        """A stopped session no longer applies relayed events."""
        listener = make_device(hub, fake_clock)
        sender = make_device(hub, fake_clock)
        listener.stop()

        sender.trigger_gate()

        assert len(listener.aggregator) == 0
        assert len(sender.aggregator) == 1


# =============================================================================
# Configuration Messages
# =============================================================================


class TestConfigurationMessages:
    """Tests for clear, gate count and distance messages."""

    def test_clear_on_all_devices(self, hub, fake_clock):
        """clear_events empties every device."""
        a = make_device(hub, fake_clock)
        b = make_device(hub, fake_clock)
        a.trigger_gate()

        b.clear_events()

        assert len(a.aggregator) == 0
        assert len(b.aggregator) == 0

    def test_gate_count_change_clears(self, hub, fake_clock):
        """A gate count change applies everywhere and clears the log."""
        a = make_device(hub, fake_clock)
        b = make_device(hub, fake_clock)
        a.trigger_gate()

        a.set_gate_count(4)

        for device in (a, b):
            assert device.aggregator.gate_count == 4
            assert len(device.aggregator) == 0

    def test_invalid_gate_count_not_published(self, hub, fake_clock):
        """Local validation rejects the change before it is sent."""
        device = make_device(hub, fake_clock)

        with pytest.raises(ValueError):
            device.set_gate_count(1)
        assert hub.messages_relayed == 0

    def test_distances_applied(self, hub, fake_clock):
        """Distance changes reach every device."""
        a = make_device(hub, fake_clock)
        b = make_device(hub, fake_clock)

        a.set_distances([10, 20])

        assert b.aggregator.distances == (10.0, 20.0)


# =============================================================================
# Payload Validation
# =============================================================================


class TestPayloadValidation:
    """Tests for malformed incoming payloads."""

    @pytest.mark.parametrize("topic,data", [
        (TOPIC_GATE_TRIGGER, {'timestamp': 'soon', 'source': 'manual'}),
        (TOPIC_GATE_TRIGGER, {'timestamp': 1.0, 'source': 'laser'}),
        (TOPIC_GATE_TRIGGER, {}),
        (TOPIC_CONFIG_CHANGE, {'count': 1}),
        (TOPIC_CONFIG_CHANGE, {'count': 'three'}),
        (TOPIC_DISTANCE_CHANGE, {'distances': [10, -1]}),
        (TOPIC_DISTANCE_CHANGE, {'distances': 'far'}),
    ])
    def test_invalid_payload_dropped(self, hub, fake_clock, topic, data):
        """Malformed payloads leave state untouched and are counted."""
        device = make_device(hub, fake_clock)

        device.handle_message(topic, data)

        assert len(device.aggregator) == 0
        assert device.aggregator.gate_count == 2
        assert device.aggregator.distances == ()
        assert get_metrics().get_drop_count('invalid_payload') == 1

    def test_unknown_topic_ignored(self, hub, fake_clock):
        """Unrelated topics are not treated as errors."""
        device = make_device(hub, fake_clock)

        device.handle_message('chat', {'text': 'ready'})

        assert get_metrics().get_drop_count('invalid_payload') == 0

    def test_integral_float_count_accepted(self, hub, fake_clock):
        """JSON numbers like 3.0 are valid gate counts."""
        device = make_device(hub, fake_clock)

        device.handle_message(TOPIC_CONFIG_CHANGE, {'count': 3.0})

        assert device.aggregator.gate_count == 3


# =============================================================================
# Motion Pipeline
# =============================================================================


class TestMotionPipeline:
    """Frames through the detector, stamper and relay into races."""

    def test_frames_to_race(self, hub, fake_clock):
        """Two motion triggers on one camera time a full race on every device."""
        camera_gate = make_device(hub, fake_clock)
        observer = make_device(hub, fake_clock)

        camera = PushFrameSource(clock_ms=fake_clock)
        detector = MotionTriggerDetector(
            on_trigger=lambda t: camera_gate.trigger_gate(EventSource.MOTION, t.metadata),
            timer_ms=lambda: 0.0,
        )
        detector.attach(camera)
        detector.arm()

        camera.push(solid_frame(0), capture_time_ms=fake_clock.now - 30.0)
        fake_clock.advance(40.0)
        start_time = fake_clock.now
        camera.push(solid_frame(200), capture_time_ms=fake_clock.now - 30.0)

        fake_clock.advance(1500.0)
        camera.push(solid_frame(0), capture_time_ms=fake_clock.now - 30.0)
        fake_clock.advance(600.0)
        camera.push(solid_frame(200), capture_time_ms=fake_clock.now - 30.0)

        for device in (camera_gate, observer):
            events = device.aggregator.events
            assert [e.source for e in events] == [EventSource.MOTION, EventSource.MOTION]
            assert events[0].timestamp == pytest.approx(start_time - 30.0)

            races = device.aggregator.races()
            assert len(races) == 1
            assert races[0].is_complete
            assert races[0].elapsed_ms == pytest.approx(2100.0)

        assert get_metrics().get_counter('motion_triggers') == 2
