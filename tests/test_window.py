"""Tests for analytics/window.py — sample buffer, eviction and clamping."""

from __future__ import annotations

import math

import pytest

from napsync.analytics.window import (
    SensorSample,
    SignalWindowBuffer,
    clamp_value,
    clamped_value,
)
from napsync.config import DEFAULT_CONFIG
from napsync.exceptions import OutOfOrderSample

from tests.conftest import make_sample, resting_samples


# ===================================================================
# Clamping
# ===================================================================


class TestClamp:
    @pytest.mark.parametrize("raw", [-50.0, 0.0, 39.9, 200.1, 1000.0])
    def test_out_of_range_heart_rate_pins_to_nearest_bound(self, raw):
        clamped = clamped_value(make_sample(1.0, heart_rate=raw))
        nearest = 40.0 if raw < 40.0 else 200.0
        assert clamped.heart_rate == nearest

    @pytest.mark.parametrize("raw", [-1.0, 3.0, 72.0, 250.0])
    def test_clamp_is_idempotent(self, raw):
        once = clamped_value(make_sample(1.0, heart_rate=raw, hrv=raw, motion=raw))
        twice = clamped_value(once)
        assert once == twice

    def test_motion_lower_bound_is_zero(self):
        assert clamped_value(make_sample(1.0, motion=-3.0)).motion == 0.0
        assert clamped_value(make_sample(1.0, motion=42.0)).motion == DEFAULT_CONFIG.max_motion

    def test_hrv_bounds(self):
        assert clamped_value(make_sample(1.0, hrv=1.0)).hrv == 5.0
        assert clamped_value(make_sample(1.0, hrv=500.0)).hrv == 200.0

    def test_in_range_untouched(self):
        s = make_sample(1.0, heart_rate=61.5, hrv=44.0, motion=0.3)
        assert clamped_value(s) == s

    def test_nan_pins_to_lower(self):
        assert clamp_value(math.nan, 40.0, 200.0) == 40.0


# ===================================================================
# SensorSample
# ===================================================================


class TestSensorSample:
    def test_dict_round_trip(self):
        s = make_sample(12.5, heart_rate=55.0)
        assert SensorSample.from_dict(s.to_dict()) == s

    def test_from_dict_missing_field(self):
        with pytest.raises(KeyError):
            SensorSample.from_dict({"timestamp": 1.0, "heart_rate": 50.0})


# ===================================================================
# SignalWindowBuffer
# ===================================================================


class TestIngest:
    def test_rejects_equal_timestamp(self):
        buf = SignalWindowBuffer()
        buf.ingest(make_sample(10.0))
        with pytest.raises(OutOfOrderSample) as exc:
            buf.ingest(make_sample(10.0))
        assert exc.value.timestamp == 10.0
        assert exc.value.last_timestamp == 10.0

    def test_rejects_older_timestamp_without_corrupting(self):
        buf = SignalWindowBuffer()
        buf.ingest(make_sample(10.0))
        buf.ingest(make_sample(11.0))
        with pytest.raises(OutOfOrderSample):
            buf.ingest(make_sample(5.0))
        window = buf.current_window()
        assert [s.timestamp for s in window.samples] == [10.0, 11.0]
        assert buf.last_timestamp == 11.0

    def test_rejection_is_logged(self, caplog):
        buf = SignalWindowBuffer()
        buf.ingest(make_sample(10.0))
        with caplog.at_level("WARNING", logger="napsync"):
            with pytest.raises(OutOfOrderSample):
                buf.ingest(make_sample(9.0))
        assert "rejected sample" in caplog.text

    def test_raw_values_stored_unclamped(self):
        buf = SignalWindowBuffer()
        buf.ingest(make_sample(1.0, heart_rate=400.0))
        assert buf.current_window().samples[0].heart_rate == 400.0

    def test_extend_skips_out_of_order(self):
        buf = SignalWindowBuffer()
        kept = buf.extend([make_sample(1.0), make_sample(3.0), make_sample(2.0), make_sample(4.0)])
        assert kept == 3
        assert len(buf) == 3


class TestCurrentWindow:
    def test_empty_buffer(self):
        window = SignalWindowBuffer().current_window()
        assert window.sample_count == 0
        assert window.end_time is None
        assert window.mean_heart_rate is None

    def test_evicts_samples_older_than_window(self):
        buf = SignalWindowBuffer()
        for t in (0.0, 10.0, 20.0, 35.0, 45.0):
            buf.ingest(make_sample(t))
        window = buf.current_window()
        # horizon = 45 - 30 = 15
        assert [s.timestamp for s in window.samples] == [20.0, 35.0, 45.0]
        assert window.end_time == 45.0
        assert window.start_time == 15.0

    def test_sample_on_horizon_is_kept(self):
        buf = SignalWindowBuffer()
        buf.ingest(make_sample(0.0))
        buf.ingest(make_sample(30.0))
        assert buf.current_window().sample_count == 2

    def test_eviction_is_lazy(self):
        buf = SignalWindowBuffer()
        for t in (0.0, 100.0):
            buf.ingest(make_sample(t))
        assert len(buf) == 2
        buf.current_window()
        assert len(buf) == 1

    def test_all_samples_within_window(self):
        buf = SignalWindowBuffer()
        for i in range(100):
            buf.ingest(make_sample(i * 1.7))
        window = buf.current_window()
        assert all(window.end_time - 30.0 <= s.timestamp <= window.end_time for s in window.samples)

    def test_clear(self):
        buf = SignalWindowBuffer()
        buf.extend(resting_samples(0.0))
        buf.clear()
        assert len(buf) == 0
        assert buf.last_timestamp is None
        buf.ingest(make_sample(0.5))


class TestWindowAggregates:
    def test_means_use_clamped_values(self):
        buf = SignalWindowBuffer()
        buf.ingest(make_sample(1.0, heart_rate=20.0, hrv=60.0, motion=0.0))
        buf.ingest(make_sample(2.0, heart_rate=60.0, hrv=100.0, motion=2.0))
        window = buf.current_window()
        assert window.mean_heart_rate == pytest.approx(50.0)  # (40 + 60) / 2
        assert window.mean_hrv == pytest.approx(80.0)
        assert window.mean_motion == pytest.approx(1.0)

    def test_variances(self):
        buf = SignalWindowBuffer()
        buf.ingest(make_sample(1.0, hrv=60.0, motion=0.0))
        buf.ingest(make_sample(2.0, hrv=100.0, motion=2.0))
        window = buf.current_window()
        assert window.hrv_variance == pytest.approx(400.0)
        assert window.motion_variance == pytest.approx(1.0)

    def test_clamped_array_shape(self):
        buf = SignalWindowBuffer()
        buf.extend(resting_samples(0.0, count=7))
        arr = buf.current_window().clamped()
        assert arr.shape == (7, 3)
