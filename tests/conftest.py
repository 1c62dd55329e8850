"""Shared fixtures and helpers for the napsync test suite."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from napsync.analytics.window import SensorSample
from napsync.config import NapConfig


# ---------------------------------------------------------------------------
# Sample-building helpers
# ---------------------------------------------------------------------------

RESTING = {"heart_rate": 50.0, "hrv": 80.0, "motion": 0.1}
ACTIVE = {"heart_rate": 150.0, "hrv": 10.0, "motion": 9.0}


def make_sample(
    timestamp: float,
    heart_rate: float = RESTING["heart_rate"],
    hrv: float = RESTING["hrv"],
    motion: float = RESTING["motion"],
) -> SensorSample:
    """Build a sample; defaults are resting values."""
    return SensorSample(timestamp=timestamp, heart_rate=heart_rate, hrv=hrv, motion=motion)


def resting_samples(start: float, count: int = 5, spacing: float = 6.0) -> list[SensorSample]:
    """*count* resting samples at ``start + spacing``, ``start + 2*spacing``, ..."""
    return [make_sample(start + spacing * (i + 1)) for i in range(count)]


def active_samples(start: float, count: int = 5, spacing: float = 6.0) -> list[SensorSample]:
    """*count* clearly-awake samples, spaced like :func:`resting_samples`."""
    return [make_sample(start + spacing * (i + 1), **ACTIVE) for i in range(count)]


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced clock usable wherever a ``clock`` callable is taken."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def set(self, t: float) -> float:
        self.now = t
        return self.now


# ---------------------------------------------------------------------------
# Link timing
# ---------------------------------------------------------------------------

# Real-time link tests run on millisecond timers.
FAST_TIMEOUT = 0.03


def fast_link_config(**overrides) -> NapConfig:
    """Config with link timers short enough for real-time tests."""
    values = {
        "timeout_interval": FAST_TIMEOUT,
        "max_retries": 3,
        "heartbeat_interval": 5.0,
    }
    values.update(overrides)
    return NapConfig(**values)


# ---------------------------------------------------------------------------
# JSONL sample log helpers
# ---------------------------------------------------------------------------


def write_jsonl(path: Path, entries: list[dict]) -> Path:
    """Write a list of dicts as JSONL to the given path."""
    with open(path, "w") as f:
        for entry in entries:
            f.write(json.dumps(entry) + "\n")
    return path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
