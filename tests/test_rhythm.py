"""Tests for HRV metrics, the Poincaré classifier and the rhythm analyser."""

from __future__ import annotations

import numpy as np
import pytest

from ppg_vitals.config import RhythmConfig
from ppg_vitals.rhythm import (
    RhythmAnalyzer,
    hrv_metrics,
    poincare,
    sample_entropy,
    shannon_entropy,
)
from ppg_vitals.types import ArrhythmiaType, RiskLevel

BIGEMINY = [1000.0, 600.0] * 20
TRIGEMINY = [800.0, 800.0, 500.0] * 13


def _ectopic():
    rr = [800.0] * 40
    rr[20] = 500.0
    rr[21] = 1100.0
    return rr


def _chaotic():
    return np.random.default_rng(42).uniform(500.0, 1100.0, 60).tolist()


def _steady():
    return (833.0 + np.random.default_rng(0).normal(0.0, 10.0, 40)).tolist()


class TestHRV:

    def test_metrics_of_alternating_series(self):
        m = hrv_metrics([800.0, 850.0, 800.0, 850.0])
        assert m.count == 4
        assert m.mean_rr == pytest.approx(825.0)
        assert m.rmssd == pytest.approx(50.0)
        assert m.pnn50 == 0.0
        assert m.pnn20 == 100.0

    def test_too_few_intervals(self):
        m = hrv_metrics([800.0, 100.0, 810.0])
        assert m.count == 2
        assert m.rmssd == 0.0

    def test_entropies_of_constant_series(self):
        rr = np.full(20, 800.0)
        assert shannon_entropy(rr) == 0.0
        assert sample_entropy(rr) == 0.0

    def test_shannon_entropy_grows_with_spread(self):
        narrow = shannon_entropy(np.array(_steady()))
        wide = shannon_entropy(np.array(_chaotic()))
        assert wide > narrow
        assert wide > 3.0


class TestPoincare:

    def test_bigeminy(self):
        assert poincare(BIGEMINY).pattern is ArrhythmiaType.BIGEMINY

    def test_trigeminy(self):
        assert poincare(TRIGEMINY).pattern is ArrhythmiaType.TRIGEMINY

    def test_isolated_ectopic(self):
        result = poincare(_ectopic())
        assert result.pattern is ArrhythmiaType.ECTOPIC
        assert result.ectopic_beats == 3
        assert result.risk is RiskLevel.LOW

    def test_chaotic_is_af_like(self):
        result = poincare(_chaotic())
        assert result.pattern is ArrhythmiaType.AF_LIKE
        assert result.risk is RiskLevel.HIGH
        assert result.sd1 > 40.0

    def test_steady_is_normal(self):
        result = poincare(_steady())
        assert result.pattern is ArrhythmiaType.NORMAL
        assert result.sd1 < 15.0

    def test_insufficient_data(self):
        result = poincare([800.0] * 5)
        assert result.pattern is ArrhythmiaType.NORMAL
        assert result.description == "insufficient data"


class TestRhythmAnalyzer:

    def test_status_empty_until_enough_intervals(self):
        ra = RhythmAnalyzer()
        result = ra.update([800.0] * 5, 1000.0)
        assert result.detected is False
        assert ra.status == ""

    def test_steady_rhythm_not_detected(self):
        ra = RhythmAnalyzer()
        result = ra.update(_steady(), 1000.0)
        assert result.detected is False
        assert result.type is ArrhythmiaType.NORMAL
        assert ra.arrhythmia_count == 0
        assert ra.status == "NORMAL"

    def test_chaotic_rhythm_detected(self):
        ra = RhythmAnalyzer()
        result = ra.update(_chaotic(), 1000.0)
        assert result.detected is True
        assert result.type is ArrhythmiaType.AF_LIKE
        assert result.risk_level is RiskLevel.HIGH
        assert result.confidence == pytest.approx(1.0)
        assert ra.status == "AF_LIKE"

    def test_bigeminy_status(self):
        ra = RhythmAnalyzer()
        ra.update(BIGEMINY, 1000.0)
        assert ra.status == "BIGEMINY"
        assert ra.last.sd1 > 200.0
        assert ra.last.risk_level is RiskLevel.MEDIUM

    def test_event_count_respects_retrigger(self):
        ra = RhythmAnalyzer()
        ra.update(_chaotic(), 1000.0)
        ra.update(_chaotic(), 2000.0)
        assert ra.arrhythmia_count == 1
        ra.update(_chaotic(), 3500.0)
        assert ra.arrhythmia_count == 2

    def test_window_keeps_newest_intervals(self):
        ra = RhythmAnalyzer(RhythmConfig(window=16, min_intervals=10))
        result = ra.update(_chaotic() + [800.0] * 16, 1000.0)
        assert result.detected is False

    def test_reset(self):
        ra = RhythmAnalyzer()
        ra.update(_chaotic(), 1000.0)
        ra.reset()
        assert ra.arrhythmia_count == 0
        assert ra.status == ""
        assert ra.last.detected is False

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            RhythmConfig(window=8, min_intervals=10)
