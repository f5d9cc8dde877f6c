"""Tests for configuration validation and profile-derived thresholds."""

from __future__ import annotations

import math

import pytest

from ppg_vitals.config import (
    DetectionThresholds,
    QualityConfig,
    SessionConfig,
    is_valid_rr,
)
from ppg_vitals.types import CalibrationProfile


def _profile(**overrides) -> CalibrationProfile:
    fields = dict(
        red_baseline=150.0, green_baseline=60.0, blue_baseline=40.0,
        red_std=2.0, green_std=1.0, blue_std=1.0,
        rg_ratio_mean=2.5, rg_ratio_std=0.05,
        signal_amplitude=6.0, noise_level=0.2,
        contact_threshold=45.0, rg_ratio_bounds=(2.0, 3.0),
        peak_threshold=1.5, min_signal_range=0.6,
        peaks_detected=6, confidence=90.0, sample_count=150, timestamp_ms=5000.0,
    )
    fields.update(overrides)
    return CalibrationProfile(**fields)


class TestDetectionThresholds:

    @pytest.mark.parametrize("kwargs", [
        dict(window_ms=0.0),
        dict(min_interval_ms=2500.0),
        dict(spectral_low_hz=5.0),
        dict(min_brightness=260.0),
        dict(consensus_ratio=0.0),
        dict(confirm_frames=10, release_frames=5),
        dict(confirm_frames=8, release_frames=8),
        dict(gain_min=1.5),
        dict(rg_ratio_bounds=(3.0, 2.0)),
    ])
    def test_impossible_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            DetectionThresholds(**kwargs)

    def test_from_profile(self):
        t = DetectionThresholds.from_profile(_profile())
        assert t.min_brightness == 45.0
        assert t.min_std == pytest.approx(0.1)
        assert t.min_range == 2.0
        assert t.rg_ratio_bounds == (2.0, 3.0)
        # untouched fields come from the base
        assert t.window_ms == DetectionThresholds().window_ms

    def test_from_profile_keeps_brightness_window_open(self):
        t = DetectionThresholds.from_profile(_profile(contact_threshold=300.0))
        assert t.min_brightness < t.max_brightness

    def test_from_profile_never_demands_more_than_the_pulse(self):
        t = DetectionThresholds.from_profile(
            _profile(min_signal_range=30.0, signal_amplitude=8.0, noise_level=10.0)
        )
        assert t.min_range == pytest.approx(4.0)
        assert t.min_std == pytest.approx(5.0)


class TestOtherConfigs:

    def test_quality_thresholds_must_increase(self):
        with pytest.raises(ValueError):
            QualityConfig(min_snr_db=10.0, good_snr_db=6.0)

    def test_session_needs_a_channel(self):
        with pytest.raises(ValueError):
            SessionConfig(n_channels=0)

    def test_rr_domain(self):
        assert is_valid_rr(300.0)
        assert is_valid_rr(2000.0)
        assert not is_valid_rr(299.0)
        assert not is_valid_rr(math.nan)
        assert not is_valid_rr(math.inf)
