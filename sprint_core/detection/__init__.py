"""
Detection Module: camera motion tripwire.
"""

from .motion_trigger import (
    MotionTrigger,
    MotionTriggerConfig,
    MotionTriggerDetector,
    center_strip,
    luminance,
    strip_delta,
    create_default_motion_detector,
)

__all__ = [
    'MotionTrigger',
    'MotionTriggerConfig',
    'MotionTriggerDetector',
    'center_strip',
    'luminance',
    'strip_delta',
    'create_default_motion_detector',
]
