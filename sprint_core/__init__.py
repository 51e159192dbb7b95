"""
Sprint Gate Timing Core Package.

Shared-clock timing for multi-device sprint gates: every device agrees on one
clock well enough to stamp button presses and camera-detected motion with
sub-100ms precision, and the stamped events are grouped into races.

Package structure:
- proto: Message schemas (clock samples, calibration stats, gate events)
- timing: Offset estimation, drift correction, calibration, compensation
- capture: Frame delivery interface
- detection: Camera motion tripwire
- domain: Race windows, split metrics, device session
- io: Relay transport and network reference clock
- metrics: Diagnostics, counters, histograms
"""

__version__ = "0.1.0"
