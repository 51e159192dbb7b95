"""
Sprint gate command line.

    python main.py hub                      # relay + reference clock
    python main.py node --hub 192.168.1.10  # gate device

A node reads commands from stdin:
    <enter>        manual gate trigger
    c              clear events
    g <n>          set gate count
    d <m> <m> ...  set gate distances
    m              arm / disarm the motion gate
    s              status
    q              quit
"""

import sys
import time
import signal
import logging
import argparse
import threading
from typing import Optional

import config
from sprint_core.proto import EventSource
from sprint_core.timing import (
    ReferenceTimeClient,
    ClockOffsetEstimator,
    OffsetEstimatorConfig,
    CalibrationRunner,
    EventStamper,
)
from sprint_core.capture import PushFrameSource
from sprint_core.detection import MotionTriggerDetector, MotionTriggerConfig, MotionTrigger
from sprint_core.domain import RaceAggregator, RaceConfig, RaceSession, RaceCue
from sprint_core.io import GateHubServer, GateHubClient, TransportError
from sprint_core.metrics import get_metrics

logging.basicConfig(
    level=getattr(logging, config.LOGGING_CONFIG["level"]),
    format=config.LOGGING_CONFIG["format"]
)
logger = logging.getLogger(__name__)


class HubApp:
    """Runs the gate hub until interrupted."""

    def __init__(self):
        self.running = False
        self.server = GateHubServer(
            host=config.HUB_CONFIG["host"],
            port=config.HUB_CONFIG["port"],
        )

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Signal {signum} received, stopping...")
        self.running = False

    def start(self) -> int:
        if not self.server.start():
            return 1

        self.running = True
        try:
            while self.running:
                time.sleep(config.HUB_CONFIG["status_interval"])
                print(f"[hub] {self.server.client_count} gate device(s) connected")
        finally:
            self.server.stop()
        return 0


class NodeApp:
    """Gate device: clock sync, calibration and the race session."""

    def __init__(self):
        self.running = False

        self.client = GateHubClient(
            host=config.NODE_CONFIG["hub_host"],
            port=config.NODE_CONFIG["hub_port"],
            reply_timeout_s=config.NODE_CONFIG["reply_timeout"],
        )

        self.estimator = ClockOffsetEstimator(
            ReferenceTimeClient(self.client),
            OffsetEstimatorConfig(**config.SYNC_CONFIG),
        )
        self.calibration = CalibrationRunner(self.estimator)
        self.stamper = EventStamper(self.estimator, lambda: self.calibration.stats)

        self.aggregator = RaceAggregator(RaceConfig(
            gate_count=config.RACE_CONFIG["gate_count"],
            distances=tuple(config.RACE_CONFIG["distances"]),
        ))
        self.session = RaceSession(self.client, self.aggregator, self.stamper,
                                   on_cue=self._on_cue)

        # Camera loops push frames here
        self.frames = PushFrameSource()
        self.detector = MotionTriggerDetector(
            MotionTriggerConfig(**config.MOTION_CONFIG),
            on_trigger=self._on_motion,
        )
        self.detector.attach(self.frames)

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Signal {signum} received, stopping...")
        self.running = False

    def _on_cue(self, cue: RaceCue, event):
        print(f"[node] {cue.name} ({event.source.value}) at {event.timestamp:.1f}")

    def _on_motion(self, trigger: MotionTrigger):
        self.session.trigger_gate(EventSource.MOTION, trigger.metadata)

    def start(self) -> int:
        try:
            self.client.connect()
        except TransportError as e:
            logger.error(str(e))
            return 1

        self.session.start()
        self.estimator.start()

        if config.NODE_CONFIG["calibrate_on_start"]:
            threading.Thread(target=self.calibration.run, name='calibration', daemon=True).start()

        threading.Thread(target=self._read_commands, name='stdin', daemon=True).start()

        self.running = True
        last_status = time.monotonic()
        try:
            while self.running and self.client.is_connected:
                time.sleep(0.2)
                if time.monotonic() - last_status > config.NODE_CONFIG["status_interval"]:
                    self._print_status()
                    last_status = time.monotonic()
        finally:
            self.stop()
        return 0

    def stop(self):
        self.running = False
        self.detector.detach()
        self.calibration.cancel()
        self.estimator.stop()
        self.session.stop()
        self.client.disconnect()
        get_metrics().print_summary()

    def _read_commands(self):
        for line in sys.stdin:
            try:
                self._handle_command(line.strip())
            except (ValueError, TransportError) as e:
                print(f"[node] {e}")
            if not self.running:
                break
        self.running = False

    def _handle_command(self, command: str):
        if command == '':
            self.session.trigger_gate(EventSource.MANUAL)
        elif command == 'c':
            self.session.clear_events()
        elif command.startswith('g '):
            self.session.set_gate_count(int(command[2:]))
        elif command.startswith('d'):
            self.session.set_distances([float(d) for d in command[1:].split()])
        elif command == 'm':
            if self.detector.is_armed:
                self.detector.disarm()
            else:
                self.detector.arm()
        elif command == 's':
            self._print_status()
        elif command == 'q':
            self.running = False
        else:
            print(__doc__)

    def _print_status(self):
        snapshot = self.estimator.snapshot()
        stats = self.calibration.stats
        age = "never" if snapshot.last_sync_age_s is None else f"{snapshot.last_sync_age_s:.0f}s ago"
        print(f"[node] offset={snapshot.offset_ms:.1f}ms synced {age} "
              f"{stats.status_label} health={stats.health.name} "
              f"stability={stats.stability_ms:.1f}ms")

        now = self.estimator.now_ms()
        for race in self.aggregator.races(live_now_ms=now):
            state = "complete" if race.is_complete else "running"
            splits = " ".join(f"{s.label}=+{s.split_ms / 1000:.3f}s" for s in race.splits[1:])
            print(f"  sprint {race.index + 1} [{state}] {race.elapsed_ms / 1000:.3f}s {splits}")


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description='Sprint gate timing')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Enable debug logging')
    subparsers = parser.add_subparsers(dest='mode', required=True)

    hub_parser = subparsers.add_parser('hub', help='Run the relay and reference clock')
    hub_parser.add_argument('--host', '-H', type=str, default=None, help='Listen address')
    hub_parser.add_argument('--port', '-p', type=int, default=None, help='Listen port')

    node_parser = subparsers.add_parser('node', help='Run a gate device')
    node_parser.add_argument('--hub', type=str, default=None, help='Hub address')
    node_parser.add_argument('--port', '-p', type=int, default=None, help='Hub port')
    node_parser.add_argument('--gates', '-g', type=int, default=None, help='Gates per race')
    node_parser.add_argument('--no-calibrate', action='store_true',
                             help='Skip the startup calibration run')

    args = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.mode == 'hub':
        if args.host:
            config.HUB_CONFIG["host"] = args.host
        if args.port:
            config.HUB_CONFIG["port"] = args.port
        return HubApp().start()

    if args.hub:
        config.NODE_CONFIG["hub_host"] = args.hub
    if args.port:
        config.NODE_CONFIG["hub_port"] = args.port
    if args.gates:
        config.RACE_CONFIG["gate_count"] = args.gates
    if args.no_calibrate:
        config.NODE_CONFIG["calibrate_on_start"] = False
    return NodeApp().start()


if __name__ == "__main__":
    sys.exit(main())
