"""Tests for pulse-morphology features."""

from __future__ import annotations

import math

import numpy as np
import pytest

from ppg_vitals import features
from ppg_vitals.types import PulseFeatures


def _sine(fs: float = 50.0, seconds: float = 6.0, freq: float = 1.0):
    t = np.arange(int(seconds * fs)) / fs
    return 100.0 + np.sin(2 * np.pi * freq * t)


def _double_gaussian(fs: float = 100.0, seconds: float = 6.0):
    """Systolic wave plus a reflected wave 250 ms later at half the height."""
    t = np.arange(int(seconds * fs)) / fs
    x = np.zeros_like(t)
    width = 0.06
    for k in range(int(seconds) + 1):
        x += np.exp(-((t - k) ** 2) / (2 * width ** 2))
        x += 0.5 * np.exp(-((t - k - 0.25) ** 2) / (2 * width ** 2))
    return x


class TestAmplitudeFeatures:

    def test_ac_dc_ratio_uses_newest_samples(self):
        x = [0.0] * 50 + [100.0, 102.0, 98.0, 100.0] * 10
        assert features.ac_dc_ratio(x) == pytest.approx(0.04, rel=0.01)

    def test_ac_dc_ratio_degenerate(self):
        assert features.ac_dc_ratio([1.0, 2.0]) == 0.0
        assert features.ac_dc_ratio([-1.0, -2.0, -1.0, -2.0]) == 0.0

    def test_perfusion_ratio_of_sine(self):
        # RMS of a unit sine over a DC of 100
        assert features.perfusion_ratio(_sine(), 50.0) == pytest.approx(
            1.0 / math.sqrt(2) / 100.0, rel=0.1
        )

    def test_constant_amplitude_has_no_variability(self):
        assert features.amplitude_variability(_sine(), 50.0) == pytest.approx(0.0, abs=0.02)


class TestTimingFeatures:

    def test_pulse_width_of_sine(self):
        assert features.pulse_width_ms(_sine(), 50.0) == pytest.approx(500.0, abs=40.0)

    def test_systolic_time_of_sine(self):
        assert features.systolic_time_ms(_sine(), 50.0) == pytest.approx(500.0, abs=40.0)

    def test_flat_signal(self):
        flat = np.full(200, 80.0)
        assert features.pulse_width_ms(flat, 50.0) == 0.0
        assert features.systolic_time_ms(flat, 50.0) == 0.0


class TestMorphology:

    def test_pure_sine_has_no_notch(self):
        assert features.dicrotic_notch_depth(_sine(), 50.0) == 0.0

    def test_reflected_wave_depth(self):
        depth = features.dicrotic_notch_depth(_double_gaussian(), 100.0)
        assert depth == pytest.approx(0.5, abs=0.05)

    def test_ensemble_beat(self):
        template, beat_seconds = features.ensemble_beat(_double_gaussian(), 100.0)
        assert len(template) == features.TEMPLATE_POINTS
        assert beat_seconds == pytest.approx(1.0, abs=0.05)

    def test_acceleration_features_in_range(self):
        augmentation, stiffness = features.acceleration_features(_double_gaussian(), 100.0)
        assert 0.0 <= augmentation <= 1.0
        assert stiffness > 0.0

    def test_acceleration_features_need_beats(self):
        assert features.acceleration_features(np.full(300, 5.0), 100.0) == (0.0, 0.0)


class TestRRFeatures:

    def test_invalid_intervals_dropped(self):
        rr = features.valid_rr([800.0, 100.0, 850.0, math.nan, 800.0, 5000.0])
        assert rr.tolist() == [800.0, 850.0, 800.0]

    def test_rr_variability(self):
        sdnn, rmssd, cv = features.rr_variability([800.0, 850.0, 800.0, 850.0])
        assert rmssd == pytest.approx(50.0)
        assert sdnn == pytest.approx(math.sqrt(4 * 25.0 ** 2 / 3))
        assert cv == pytest.approx(sdnn / 825.0)

    def test_rr_variability_needs_three(self):
        assert features.rr_variability([800.0, 900.0]) == (0.0, 0.0, 0.0)


class TestExtractFeatures:

    def test_tiny_window_is_all_zero(self):
        assert features.extract_features([1.0, 2.0, 1.0], 30.0) == PulseFeatures()

    def test_full_window(self):
        f = features.extract_features(_sine(), 50.0, [1000.0] * 6)
        assert f.ac_dc_ratio > 0.0
        assert f.pulse_width_ms > 0.0
        assert f.sdnn == 0.0
        assert f.rmssd == 0.0
