"""
Reference Time Client.

Issues round-trip queries against a reference time source and returns raw
samples. No smoothing or outlier handling happens here; that belongs to the
offset estimator.

A reference source can answer in one of two shapes:
- server_now_ms(): a single "server now" value (symmetric method)
- echo(client_send_ms): receive/response timestamps plus the echoed client
  send time (asymmetric 4-timestamp method)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from sprint_core.proto import ClockSample, EchoSample
from sprint_core.metrics import get_metrics
from sprint_core.clock import monotonic_ms

logger = logging.getLogger(__name__)


class ProbeError(Exception):
    """A round-trip probe failed (transport error, timeout, bad reply)."""


@dataclass(frozen=True)
class EchoReply:
    """
    Reply to an echo request.

    Attributes:
        server_receive_time: Reference time the request arrived (ms)
        server_response_time: Reference time the reply was sent (ms)
        echoed_client_send_time: Client send time copied from the request (ms)
    """

    server_receive_time: float
    server_response_time: float
    echoed_client_send_time: float


class TimeSource(ABC):
    """
    Authoritative "now" reachable by round trip.

    Implementations raise any exception on transport failure; the client
    wraps it in ProbeError.
    """

    @abstractmethod
    def server_now_ms(self) -> float:
        """Return the reference source's current time (ms)."""

    def echo(self, client_send_ms: float) -> EchoReply:
        """Run a 4-timestamp echo exchange (optional capability)."""
        raise NotImplementedError(f"{type(self).__name__} does not support echo")

    @property
    def supports_echo(self) -> bool:
        """True if echo() is implemented."""
        return False


class ReferenceTimeClient:
    """
    Round-trip prober against a TimeSource.

    Usage:
        client = ReferenceTimeClient(source)
        sample = client.probe()         # ClockSample
        if client.supports_echo:
            echo = client.probe_echo()  # EchoSample
    """

    def __init__(self, source: TimeSource, clock_ms: Optional[Callable[[], float]] = None):
        """
        Initialize client.

        Args:
            source: Reference time source
            clock_ms: Local monotonic clock in ms (default: time.monotonic)
        """
        self.source = source
        self.clock_ms = clock_ms or monotonic_ms
        self.metrics = get_metrics()

    @property
    def supports_echo(self) -> bool:
        """True if the source can run the asymmetric exchange."""
        return self.source.supports_echo

    def probe(self) -> ClockSample:
        """
        Run one symmetric round trip.

        Returns:
            ClockSample

        Raises:
            ProbeError: If the source fails or replies with garbage
        """
        self.metrics.increment('probes_sent')

        local_send = self.clock_ms()
        try:
            reference_time = float(self.source.server_now_ms())
        except Exception as e:
            raise ProbeError(f"time probe failed: {e}") from e
        local_receive = self.clock_ms()

        sample = ClockSample.from_times(local_send, local_receive, reference_time)

        self.metrics.increment('probes_ok')
        self.metrics.record_histogram('probe_rtt_ms', sample.round_trip_time)
        logger.debug(f"Probe rtt={sample.round_trip_time:.1f}ms "
                     f"offset={sample.estimated_offset:.1f}ms")
        return sample

    def probe_echo(self) -> EchoSample:
        """
        Run one 4-timestamp echo exchange.

        Returns:
            EchoSample

        Raises:
            ProbeError: If the source fails, lacks echo support, or echoes
                a different send time
        """
        self.metrics.increment('probes_sent')

        t1 = self.clock_ms()
        try:
            reply = self.source.echo(t1)
        except Exception as e:
            raise ProbeError(f"echo probe failed: {e}") from e
        t4 = self.clock_ms()

        if reply.echoed_client_send_time != t1:
            raise ProbeError(
                f"echo mismatch: sent {t1}, got {reply.echoed_client_send_time}"
            )

        sample = EchoSample(
            t1=t1,
            t2=float(reply.server_receive_time),
            t3=float(reply.server_response_time),
            t4=t4,
        )

        self.metrics.increment('probes_ok')
        self.metrics.record_histogram('probe_rtt_ms', sample.round_trip_time)
        return sample
