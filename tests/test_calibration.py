"""Tests for the calibration learner."""

from __future__ import annotations

import numpy as np
import pytest

from ppg_vitals.calibration import CalibrationLearner
from ppg_vitals.config import CalibrationConfig
from ppg_vitals.types import CalibrationState, RawSample


def _samples(seconds: float, fps: float = 30.0, red_dc: float = 150.0,
             green_dc: float = 60.0, bpm: float = 72.0):
    n = int(seconds * fps)
    t_ms = np.arange(n) * 1000.0 / fps
    phase = np.sin(2 * np.pi * (bpm / 60.0) * t_ms / 1000.0)
    return [
        RawSample(timestamp_ms=float(t), red_mean=float(red_dc + 3.0 * p),
                  green_mean=float(green_dc + 1.0 * p), blue_mean=40.0)
        for t, p in zip(t_ms, phase)
    ]


class TestCalibrationLearner:

    def test_idle_ignores_samples(self):
        cal = CalibrationLearner()
        assert cal.add_sample(_samples(0.1)[0]) is CalibrationState.IDLE
        assert cal.is_calibrating is False

    def test_successful_calibration(self):
        cal = CalibrationLearner()
        cal.start()
        for s in _samples(5.1):
            cal.add_sample(s)
        assert cal.state is CalibrationState.COMPLETE
        profile = cal.profile
        assert profile is not None
        assert profile.red_baseline == pytest.approx(150.0, abs=0.5)
        assert profile.contact_threshold == pytest.approx(45.0, abs=0.5)
        assert profile.peaks_detected >= 4
        lo, hi = profile.rg_ratio_bounds
        assert lo < profile.rg_ratio_mean < hi
        assert 0.5 <= lo and hi <= 5.0
        assert profile.peak_threshold == pytest.approx(0.25 * profile.signal_amplitude)
        assert profile.min_signal_range == pytest.approx(3.0 * profile.noise_level)
        assert profile.confidence > 80.0
        assert cal.progress == 1.0

    def test_too_few_samples_fails(self):
        cal = CalibrationLearner()
        cal.start()
        for s in _samples(6.0, fps=10.0):
            cal.add_sample(s)
        assert cal.state is CalibrationState.FAILED
        assert "insufficient samples" in cal.failure_reason
        assert cal.profile is None

    def test_dark_samples_are_not_kept(self):
        cal = CalibrationLearner()
        cal.start()
        for s in _samples(5.5, red_dc=10.0, green_dc=5.0):
            cal.add_sample(s)
        assert cal.state is CalibrationState.FAILED

    def test_progress_and_realtime_stats(self):
        cal = CalibrationLearner()
        cal.start()
        for s in _samples(2.5):
            cal.add_sample(s)
        assert cal.is_calibrating is True
        assert cal.progress == pytest.approx(0.5, abs=0.02)
        stats = cal.realtime_stats()
        assert stats["sample_count"] == 75
        assert stats["red_mean"] == pytest.approx(150.0, abs=1.0)

    def test_finish_early(self):
        cal = CalibrationLearner()
        cal.start()
        for s in _samples(3.4):
            cal.add_sample(s)
        assert cal.finish() is CalibrationState.COMPLETE

    def test_samples_after_completion_are_ignored(self):
        cal = CalibrationLearner()
        cal.start()
        for s in _samples(5.1):
            cal.add_sample(s)
        profile = cal.profile
        cal.add_sample(RawSample(9000.0, 10.0, 5.0, 1.0))
        assert cal.profile is profile

    def test_reset_and_restart(self):
        cal = CalibrationLearner()
        cal.start()
        for s in _samples(5.1):
            cal.add_sample(s)
        cal.reset()
        assert cal.state is CalibrationState.IDLE
        assert cal.profile is None
        cal.start()
        assert cal.state is CalibrationState.COLLECTING
        assert cal.progress == 0.0

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            CalibrationConfig(min_samples=200, expected_samples=150)
