"""Sleep/wake classification of a signal window.

Each signal is mapped onto a [0, 1] "asleep-ness" score by linear
interpolation between its configured bounds:

    heart rate   lower is more asleep   (inverted)
    HRV          higher is more asleep
    motion       lower is more asleep   (inverted)

The three scores are combined with fixed weights (equal by default) into a
single confidence.  A hysteresis band keeps borderline windows out of both
Asleep and Awake:

    confidence >= threshold       -> Asleep
    confidence <= 1 - threshold   -> Awake
    otherwise                     -> Indeterminate

The classifier holds no state between calls; identical windows always give
identical results, so recorded sessions replay deterministically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

import numpy as np

from napsync.analytics.window import Window
from napsync.config import DEFAULT_CONFIG, NapConfig


class SleepState(IntEnum):
    """Coarse sleep/wake judgment for one window (values are wire codes)."""

    AWAKE = 1
    ASLEEP = 2
    INDETERMINATE = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of classifying one window."""

    window_end_time: float | None
    state: SleepState
    confidence: float
    sample_count: int
    scores: dict[str, float] = field(default_factory=dict, compare=False)

    @property
    def insufficient_data(self) -> bool:
        return self.state is SleepState.INDETERMINATE and not self.scores

    def to_dict(self) -> dict:
        return {
            "window_end_time": self.window_end_time,
            "state": self.state.label,
            "confidence": round(self.confidence, 4),
            "sample_count": self.sample_count,
            "scores": {k: round(v, 4) for k, v in self.scores.items()},
        }

    def __repr__(self) -> str:
        return (
            f"ClassificationResult({self.state.label}, conf={self.confidence:.2f}, "
            f"n={self.sample_count}, end={self.window_end_time})"
        )


def normalize(raw_value: float, bounds: tuple[float, float], invert: bool = False) -> float:
    """Map *raw_value* linearly onto [0, 1] between ``bounds``.

    Values outside the bounds are clamped first.  With ``invert=True`` the
    lower bound maps to 1 and the upper bound to 0.
    """
    lower, upper = bounds
    if upper <= lower:
        raise ValueError(f"invalid bounds {bounds}")
    clamped = min(max(raw_value, lower), upper)
    score = (clamped - lower) / (upper - lower)
    return 1.0 - score if invert else score


class SleepStateClassifier:
    """Turn a :class:`Window` into a confidence-scored sleep/wake judgment."""

    def __init__(self, config: NapConfig = DEFAULT_CONFIG) -> None:
        self.config = config
        weights = np.asarray(config.score_weights, dtype=np.float64)
        self._weights = weights / weights.sum()

    def signal_scores(self, window: Window) -> dict[str, float]:
        """Per-signal normalized scores from the window's clamped means."""
        cfg = self.config
        means = window.clamped().mean(axis=0)
        return {
            "heart_rate": normalize(
                float(means[0]), (cfg.min_heart_rate, cfg.max_heart_rate), invert=True
            ),
            "hrv": normalize(float(means[1]), (cfg.min_hrv, cfg.max_hrv)),
            "motion": normalize(float(means[2]), (0.0, cfg.max_motion), invert=True),
        }

    def combine(self, scores: dict[str, float]) -> float:
        vec = np.array([scores["heart_rate"], scores["hrv"], scores["motion"]])
        return float(np.clip(np.dot(self._weights, vec), 0.0, 1.0))

    def state_for(self, confidence: float) -> SleepState:
        threshold = self.config.confidence_threshold
        if confidence >= threshold:
            return SleepState.ASLEEP
        if confidence <= 1.0 - threshold:
            return SleepState.AWAKE
        return SleepState.INDETERMINATE

    def classify(self, window: Window) -> ClassificationResult:
        if window.sample_count < self.config.minimum_data_points:
            return ClassificationResult(
                window_end_time=window.end_time,
                state=SleepState.INDETERMINATE,
                confidence=0.0,
                sample_count=window.sample_count,
            )

        scores = self.signal_scores(window)
        confidence = self.combine(scores)
        return ClassificationResult(
            window_end_time=window.end_time,
            state=self.state_for(confidence),
            confidence=confidence,
            sample_count=window.sample_count,
            scores=scores,
        )
