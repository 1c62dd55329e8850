"""Signal windowing and sleep/wake classification.

Modules:
    window     -- SensorSample, clamping, rolling SignalWindowBuffer
    classifier -- normalize(), SleepStateClassifier and its results
"""

from napsync.analytics.window import (
    SensorSample,
    Window,
    SignalWindowBuffer,
    clamp_value,
    clamped_value,
)
from napsync.analytics.classifier import (
    SleepState,
    ClassificationResult,
    SleepStateClassifier,
    normalize,
)

__all__ = [
    # window
    "SensorSample",
    "Window",
    "SignalWindowBuffer",
    "clamp_value",
    "clamped_value",
    # classifier
    "SleepState",
    "ClassificationResult",
    "SleepStateClassifier",
    "normalize",
]
