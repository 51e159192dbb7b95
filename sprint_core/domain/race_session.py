"""
Race Session.

Binds one device to the shared relay:
- outgoing: trigger_gate() stamps a GateEvent and publishes it; clear, gate
  count and distance changes are published too
- incoming: topic handlers validate payloads and apply them to the local
  RaceAggregator

Local state only changes through incoming messages. The relay echoes every
message to its sender, so all devices apply the same sequence.
"""

import logging
from typing import Any, Callable, Dict, Optional, Sequence

from sprint_core.proto import (
    GateEvent,
    EventSource,
    MotionMetadata,
    parse_gate_count,
    parse_distances,
    TOPIC_GATE_TRIGGER,
    TOPIC_CLEAR_EVENTS,
    TOPIC_CONFIG_CHANGE,
    TOPIC_DISTANCE_CHANGE,
)
from sprint_core.timing import EventStamper
from sprint_core.io import Transport
from sprint_core.metrics import get_metrics
from .race_aggregator import RaceAggregator, RaceCue

logger = logging.getLogger(__name__)

CueCallback = Callable[[RaceCue, GateEvent], None]


class RaceSession:
    """
    Device-side race session.

    Usage:
        session = RaceSession(transport, RaceAggregator(), stamper,
                              on_cue=lambda cue, event: play_sound(cue))
        session.start()
        session.trigger_gate()                       # manual press
        session.trigger_gate(EventSource.MOTION, m)  # from the motion detector
        races = session.aggregator.races(live_now_ms=stamper.estimator.now_ms())
    """

    def __init__(
        self,
        transport: Transport,
        aggregator: RaceAggregator,
        stamper: EventStamper,
        on_cue: Optional[CueCallback] = None,
    ):
        """
        Initialize session.

        Args:
            transport: Relay endpoint
            aggregator: Local race state
            stamper: Creates compensated GateEvents
            on_cue: Called with the cue of every arriving gate event
        """
        self.transport = transport
        self.aggregator = aggregator
        self.stamper = stamper
        self.on_cue = on_cue
        self.metrics = get_metrics()

        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            TOPIC_GATE_TRIGGER: self._on_gate_trigger,
            TOPIC_CLEAR_EVENTS: self._on_clear_events,
            TOPIC_CONFIG_CHANGE: self._on_config_change,
            TOPIC_DISTANCE_CHANGE: self._on_distance_change,
        }
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self):
        """Subscribe to the relay topics."""
        if self._unsubscribe is None:
            self._unsubscribe = self.transport.subscribe(self.handle_message)

    def stop(self):
        """Unsubscribe from the relay."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    def trigger_gate(
        self,
        source: EventSource = EventSource.MANUAL,
        metadata: Optional[MotionMetadata] = None,
    ) -> Optional[GateEvent]:
        """
        Stamp a trigger now and publish it.

        Returns:
            The published GateEvent, None if the relay is disconnected
        """
        if not self.transport.is_connected:
            logger.warning(f"Gate trigger ({source.value}) dropped: relay not connected")
            return None

        event = self.stamper.stamp(source, metadata)
        self.transport.publish(TOPIC_GATE_TRIGGER, event.to_payload())
        logger.debug(f"Published gate trigger at {event.timestamp:.1f} ({source.value})")
        return event

    def clear_events(self):
        """Ask every device to drop its events."""
        self.transport.publish(TOPIC_CLEAR_EVENTS, {})

    def set_gate_count(self, count: int):
        """
        Publish a new gate count (clears events on every device).

        Raises:
            ValueError: If count < 2
        """
        count = parse_gate_count({'count': count})
        self.transport.publish(TOPIC_CONFIG_CHANGE, {'count': count})

    def set_distances(self, distances: Sequence[float]):
        """
        Publish gate distances.

        Raises:
            ValueError: If a distance is not a non-negative number
        """
        distances = parse_distances({'distances': list(distances)})
        self.transport.publish(TOPIC_DISTANCE_CHANGE, {'distances': distances})

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    def handle_message(self, topic: str, data: Dict[str, Any]):
        """Apply one relayed message; bad payloads are logged and counted."""
        handler = self._handlers.get(topic)
        if handler is None:
            logger.debug(f"Ignoring topic '{topic}'")
            return

        try:
            handler(data)
        except ValueError as e:
            self.metrics.increment_drop('invalid_payload')
            logger.warning(f"Invalid '{topic}' payload dropped: {e}")

    def _on_gate_trigger(self, data: Dict[str, Any]):
        event = GateEvent.from_payload(data)
        cue = self.aggregator.add_event(event)
        logger.info(f"Gate {cue.value}: {event.timestamp:.1f} ({event.source.value})")
        if self.on_cue is not None:
            self.on_cue(cue, event)

    def _on_clear_events(self, data: Dict[str, Any]):
        self.aggregator.clear()

    def _on_config_change(self, data: Dict[str, Any]):
        self.aggregator.set_gate_count(parse_gate_count(data))

    def _on_distance_change(self, data: Dict[str, Any]):
        self.aggregator.set_distances(parse_distances(data))
