"""napsync: nap sessions driven by wearable sleep detection, synced between devices."""

from napsync.config import DEFAULT_CONFIG, NapConfig, load_config
from napsync.analytics import (
    ClassificationResult,
    SensorSample,
    SignalWindowBuffer,
    SleepState,
    SleepStateClassifier,
)
from napsync.session import EndReason, NapSession, NapSessionStateMachine, NapState
from napsync.orchestrator import Role, SessionOrchestrator

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_CONFIG",
    "NapConfig",
    "load_config",
    "ClassificationResult",
    "SensorSample",
    "SignalWindowBuffer",
    "SleepState",
    "SleepStateClassifier",
    "EndReason",
    "NapSession",
    "NapSessionStateMachine",
    "NapState",
    "Role",
    "SessionOrchestrator",
]
