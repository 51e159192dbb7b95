"""
Pytest configuration and shared fixtures for the sprint gate timing tests.

This module provides deterministic clocks, scripted reference time sources
and frame factories so timing behaviour can be tested without real networks,
cameras or sleeps.
"""

import sys
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import numpy as np
import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from sprint_core.metrics import reset_metrics
from sprint_core.timing import TimeSource, EchoReply


# =============================================================================
# Clocks
# =============================================================================


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start_ms: float = 1000.0):
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float):
        self.now += ms

    def sleep(self, ms: float):
        """Drop-in for sleep_ms: advances instead of blocking."""
        self.now += ms


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Every test starts with an empty global metrics collector."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def fake_clock() -> FakeClock:
    """
    Deterministic local clock.

    Returns:
        FakeClock starting at 1000ms.
    """
    return FakeClock()


# =============================================================================
# Reference Time Sources
# =============================================================================


class ScriptedTimeSource(TimeSource):
    """
    Time source replaying scripted (offset, rtt) replies.

    Each reply advances the shared local clock by the round trip and reports
    a reference time chosen so that the resulting ClockSample has exactly the
    scripted estimated offset. A None entry raises ConnectionError.
    """

    def __init__(self, clock: FakeClock, script: Iterable[Optional[Tuple[float, float]]]):
        self.clock = clock
        self.script = list(script)
        self.calls = 0

    def server_now_ms(self) -> float:
        entry = self.script[self.calls % len(self.script)]
        self.calls += 1
        if entry is None:
            raise ConnectionError("reference unreachable")

        offset, rtt = entry
        self.clock.advance(rtt / 2.0)
        reference = self.clock.now + offset
        self.clock.advance(rtt / 2.0)
        return reference


class EchoTimeSource(TimeSource):
    """
    Time source answering 4-timestamp echoes.

    Script entries are (offset, upload_ms, download_ms); the reference side
    spends processing_ms between receive and response.
    """

    def __init__(self, clock: FakeClock, script: Iterable[Tuple[float, float, float]],
                 processing_ms: float = 1.0):
        self.clock = clock
        self.script = list(script)
        self.processing_ms = processing_ms
        self.calls = 0
        self.echo_calls = 0

    @property
    def supports_echo(self) -> bool:
        return True

    def _next(self) -> Tuple[float, float, float]:
        entry = self.script[self.calls % len(self.script)]
        self.calls += 1
        return entry

    def server_now_ms(self) -> float:
        offset, upload, download = self._next()
        self.clock.advance(upload)
        reference = self.clock.now + offset
        self.clock.advance(download)
        return reference

    def echo(self, client_send_ms: float) -> EchoReply:
        self.echo_calls += 1
        offset, upload, download = self._next()
        self.clock.advance(upload)
        received = self.clock.now + offset
        self.clock.advance(self.processing_ms)
        responded = self.clock.now + offset
        self.clock.advance(download)
        return EchoReply(
            server_receive_time=received,
            server_response_time=responded,
            echoed_client_send_time=client_send_ms,
        )


@pytest.fixture
def scripted_source(fake_clock: FakeClock):
    """
    Factory for ScriptedTimeSource bound to the fake clock.

    Returns:
        Callable taking the (offset, rtt) script.
    """
    def _make(script: List[Optional[Tuple[float, float]]]) -> ScriptedTimeSource:
        return ScriptedTimeSource(fake_clock, script)
    return _make


@pytest.fixture
def echo_source(fake_clock: FakeClock):
    """
    Factory for EchoTimeSource bound to the fake clock.

    Returns:
        Callable taking the (offset, upload, download) script.
    """
    def _make(script: List[Tuple[float, float, float]], processing_ms: float = 1.0) -> EchoTimeSource:
        return EchoTimeSource(fake_clock, script, processing_ms)
    return _make


# =============================================================================
# Frames
# =============================================================================


def solid_frame(value: int, height: int = 48, width: int = 64, channels: int = 3) -> np.ndarray:
    """
    Uniform RGB (or grey when channels=0) frame.

    Args:
        value: Pixel value 0-255.
        height: Frame height.
        width: Frame width.
        channels: 3 or 4 for colour, 1 for (H, W, 1) grey, 0 for (H, W) grey.

    Returns:
        uint8 array.
    """
    shape = (height, width) if channels == 0 else (height, width, channels)
    return np.full(shape, value, dtype=np.uint8)


@pytest.fixture
def make_frame():
    """
    Factory for uniform frames.

    Returns:
        solid_frame
    """
    return solid_frame
