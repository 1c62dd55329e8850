"""Tests for analytics/classifier.py — normalization, scoring and hysteresis."""

from __future__ import annotations

import pytest

from napsync.analytics.classifier import (
    ClassificationResult,
    SleepState,
    SleepStateClassifier,
    normalize,
)
from napsync.analytics.window import SignalWindowBuffer, Window
from napsync.config import DEFAULT_CONFIG

from tests.conftest import active_samples, make_sample, resting_samples


def window_of(samples, config=DEFAULT_CONFIG) -> Window:
    buf = SignalWindowBuffer(config)
    buf.extend(samples)
    return buf.current_window()


# ===================================================================
# normalize
# ===================================================================


class TestNormalize:
    def test_linear_between_bounds(self):
        assert normalize(15.0, (10.0, 20.0)) == pytest.approx(0.5)

    def test_bounds_map_to_ends(self):
        assert normalize(10.0, (10.0, 20.0)) == 0.0
        assert normalize(20.0, (10.0, 20.0)) == 1.0

    def test_inverted(self):
        assert normalize(10.0, (10.0, 20.0), invert=True) == 1.0
        assert normalize(17.5, (10.0, 20.0), invert=True) == pytest.approx(0.25)

    def test_out_of_range_is_clamped(self):
        assert normalize(-100.0, (10.0, 20.0)) == 0.0
        assert normalize(1e9, (10.0, 20.0)) == 1.0

    def test_bad_bounds(self):
        with pytest.raises(ValueError):
            normalize(1.0, (5.0, 5.0))


# ===================================================================
# Insufficient data
# ===================================================================


class TestInsufficientData:
    @pytest.mark.parametrize("count", [0, 1, 2, 3, 4])
    def test_below_minimum_is_indeterminate_zero(self, count):
        result = SleepStateClassifier().classify(window_of(resting_samples(0.0, count=count)))
        assert result.state is SleepState.INDETERMINATE
        assert result.confidence == 0.0
        assert result.sample_count == count
        assert result.insufficient_data

    def test_exactly_minimum_is_classified(self):
        result = SleepStateClassifier().classify(window_of(resting_samples(0.0, count=5)))
        assert result.state is SleepState.ASLEEP
        assert not result.insufficient_data

    def test_minimum_respects_config(self):
        cfg = DEFAULT_CONFIG.with_overrides(minimum_data_points=8)
        samples = resting_samples(0.0, count=6, spacing=4.0)
        result = SleepStateClassifier(cfg).classify(window_of(samples, cfg))
        assert result.state is SleepState.INDETERMINATE


# ===================================================================
# Classification
# ===================================================================


class TestClassify:
    def test_resting_window_is_asleep(self):
        """HR 50, HRV 80, motion 0.1 over a full window -> Asleep, conf >= 0.7."""
        result = SleepStateClassifier().classify(window_of(resting_samples(0.0, count=6)))
        assert result.state is SleepState.ASLEEP
        assert result.confidence >= 0.7
        assert result.confidence == pytest.approx(0.7707, abs=1e-3)

    def test_active_window_is_awake(self):
        result = SleepStateClassifier().classify(window_of(active_samples(0.0)))
        assert result.state is SleepState.AWAKE
        assert result.confidence <= 0.3

    def test_borderline_window_is_indeterminate(self):
        samples = [make_sample(t, heart_rate=100.0, hrv=60.0, motion=3.0) for t in range(1, 7)]
        result = SleepStateClassifier().classify(window_of(samples))
        assert 0.3 < result.confidence < 0.7
        assert result.state is SleepState.INDETERMINATE

    def test_extreme_readings_are_clamped_not_fatal(self):
        samples = [make_sample(t, heart_rate=-5.0, hrv=9999.0, motion=-1.0) for t in range(1, 7)]
        result = SleepStateClassifier().classify(window_of(samples))
        assert result.confidence == pytest.approx(1.0)
        assert result.scores == {"heart_rate": 1.0, "hrv": 1.0, "motion": 1.0}

    def test_deterministic(self):
        window = window_of(resting_samples(0.0))
        clf = SleepStateClassifier()
        assert clf.classify(window) == clf.classify(window)

    def test_result_carries_window_end(self):
        result = SleepStateClassifier().classify(window_of(resting_samples(100.0)))
        assert result.window_end_time == 130.0
        assert result.sample_count == 5


class TestHysteresis:
    @pytest.mark.parametrize(
        "confidence,state",
        [
            (0.0, SleepState.AWAKE),
            (0.3, SleepState.AWAKE),
            (0.31, SleepState.INDETERMINATE),
            (0.5, SleepState.INDETERMINATE),
            (0.69, SleepState.INDETERMINATE),
            (0.7, SleepState.ASLEEP),
            (1.0, SleepState.ASLEEP),
        ],
    )
    def test_state_for(self, confidence, state):
        assert SleepStateClassifier().state_for(confidence) is state


class TestWeights:
    def test_equal_weights_average(self):
        clf = SleepStateClassifier()
        assert clf.combine({"heart_rate": 1.0, "hrv": 0.0, "motion": 0.5}) == pytest.approx(0.5)

    def test_custom_weights(self):
        cfg = DEFAULT_CONFIG.with_overrides(score_weights=(0.0, 0.0, 1.0))
        clf = SleepStateClassifier(cfg)
        assert clf.combine({"heart_rate": 0.0, "hrv": 0.0, "motion": 0.9}) == pytest.approx(0.9)


class TestResultDict:
    def test_to_dict(self):
        result = ClassificationResult(12.0, SleepState.AWAKE, 0.12346, 6, {"hrv": 0.5})
        d = result.to_dict()
        assert d["state"] == "Awake"
        assert d["confidence"] == 0.1235
        assert d["scores"] == {"hrv": 0.5}
