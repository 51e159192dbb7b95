"""
Capture Module: frame delivery interface.

Camera drivers are external; they feed frames through CaptureSource.
"""

from .frame_source import (
    Frame,
    FrameCallback,
    CaptureSource,
    Subscription,
    PushFrameSource,
)

__all__ = [
    'Frame',
    'FrameCallback',
    'CaptureSource',
    'Subscription',
    'PushFrameSource',
]
