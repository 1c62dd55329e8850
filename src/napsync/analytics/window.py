"""Rolling time window of wearable sensor samples.

This is the foundation for classification.  It provides:
  - The :class:`SensorSample` record pushed in by sensor capture
  - Value clamping into the configured physiological bounds
  - :class:`SignalWindowBuffer`, an append-only buffer that evicts lazily
  - :class:`Window`, the immutable view handed to the classifier
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from napsync.config import DEFAULT_CONFIG, NapConfig
from napsync.exceptions import OutOfOrderSample

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SensorSample:
    """A single raw reading from the wrist unit (unclamped)."""

    timestamp: float  # seconds
    heart_rate: float  # bpm
    hrv: float  # ms
    motion: float  # device units

    @classmethod
    def from_dict(cls, d: dict) -> SensorSample:
        return cls(
            timestamp=float(d["timestamp"]),
            heart_rate=float(d["heart_rate"]),
            hrv=float(d["hrv"]),
            motion=float(d["motion"]),
        )

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "heart_rate": self.heart_rate,
            "hrv": self.hrv,
            "motion": self.motion,
        }


# ---------------------------------------------------------------------------
# Clamping
# ---------------------------------------------------------------------------


def clamp_value(value: float, lower: float, upper: float) -> float:
    """Clamp *value* into ``[lower, upper]``.  NaN is pinned to *lower*."""
    if value != value:  # NaN
        return lower
    return min(max(value, lower), upper)


def clamped_value(sample: SensorSample, config: NapConfig = DEFAULT_CONFIG) -> SensorSample:
    """Return *sample* with every signal pulled into its configured bounds.

    Out-of-range readings are sensor noise: they are pinned to the nearest
    bound rather than dropped, so one bad reading never stalls the window.
    """
    return SensorSample(
        timestamp=sample.timestamp,
        heart_rate=clamp_value(sample.heart_rate, config.min_heart_rate, config.max_heart_rate),
        hrv=clamp_value(sample.hrv, config.min_hrv, config.max_hrv),
        motion=clamp_value(sample.motion, 0.0, config.max_motion),
    )


# ---------------------------------------------------------------------------
# Window view
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Window:
    """Ordered samples covering ``[end_time - size, end_time]``."""

    samples: tuple[SensorSample, ...]
    end_time: float | None
    size: float
    config: NapConfig = DEFAULT_CONFIG

    @property
    def sample_count(self) -> int:
        return len(self.samples)

    @property
    def start_time(self) -> float | None:
        if self.end_time is None:
            return None
        return self.end_time - self.size

    def clamped(self) -> np.ndarray:
        """Clamped signals as an ``(N, 3)`` array of heart rate, HRV, motion."""
        if not self.samples:
            return np.empty((0, 3), dtype=np.float64)
        cfg = self.config
        raw = np.array(
            [(s.heart_rate, s.hrv, s.motion) for s in self.samples], dtype=np.float64
        )
        lower = np.array([cfg.min_heart_rate, cfg.min_hrv, 0.0])
        upper = np.array([cfg.max_heart_rate, cfg.max_hrv, cfg.max_motion])
        raw = np.where(np.isnan(raw), lower, raw)
        return np.clip(raw, lower, upper)

    def _column(self, idx: int) -> np.ndarray:
        return self.clamped()[:, idx]

    @property
    def mean_heart_rate(self) -> float | None:
        col = self._column(0)
        return float(np.mean(col)) if len(col) else None

    @property
    def mean_hrv(self) -> float | None:
        col = self._column(1)
        return float(np.mean(col)) if len(col) else None

    @property
    def hrv_variance(self) -> float | None:
        col = self._column(1)
        return float(np.var(col)) if len(col) else None

    @property
    def mean_motion(self) -> float | None:
        col = self._column(2)
        return float(np.mean(col)) if len(col) else None

    @property
    def motion_variance(self) -> float | None:
        col = self._column(2)
        return float(np.var(col)) if len(col) else None

    def __repr__(self) -> str:
        return f"Window(n={self.sample_count}, end={self.end_time}, size={self.size:.0f}s)"


# ---------------------------------------------------------------------------
# Buffer
# ---------------------------------------------------------------------------


class SignalWindowBuffer:
    """Append-only sample buffer with lazy, oldest-first eviction.

    Samples older than ``window_size`` relative to the newest ingested
    timestamp are dropped when the window is read, not on a timer.
    """

    def __init__(self, config: NapConfig = DEFAULT_CONFIG) -> None:
        self.config = config
        self._samples: deque[SensorSample] = deque()
        self._last_timestamp: float | None = None

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def last_timestamp(self) -> float | None:
        return self._last_timestamp

    def ingest(self, sample: SensorSample) -> None:
        """Append *sample*; raises :class:`OutOfOrderSample` if not strictly newer."""
        if self._last_timestamp is not None and sample.timestamp <= self._last_timestamp:
            raise OutOfOrderSample(sample.timestamp, self._last_timestamp)
        self._samples.append(sample)
        self._last_timestamp = sample.timestamp

    def extend(self, samples: Iterable[SensorSample]) -> int:
        """Ingest many samples, skipping out-of-order ones. Returns the count kept."""
        kept = 0
        for s in samples:
            try:
                self.ingest(s)
            except OutOfOrderSample:
                continue
            kept += 1
        return kept

    def current_window(self) -> Window:
        """Evict stale samples and return the window ending at the newest one."""
        if self._last_timestamp is None:
            return Window(samples=(), end_time=None, size=self.config.window_size, config=self.config)

        horizon = self._last_timestamp - self.config.window_size
        evicted = 0
        while self._samples and self._samples[0].timestamp < horizon:
            self._samples.popleft()
            evicted += 1
        if evicted:
            logger.debug("evicted %d sample(s) older than t=%.3f", evicted, horizon)

        return Window(
            samples=tuple(self._samples),
            end_time=self._last_timestamp,
            size=self.config.window_size,
            config=self.config,
        )

    def clear(self) -> None:
        self._samples.clear()
        self._last_timestamp = None
