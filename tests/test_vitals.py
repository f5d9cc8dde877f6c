"""Tests for the gated vital-sign estimator."""

from __future__ import annotations

import pytest

from ppg_vitals.config import VitalLimits
from ppg_vitals.types import PulseFeatures
from ppg_vitals.vitals import VitalEstimator, constrain_pressure, validate_real_pulse

STEADY_RR = [800.0] * 8
NEUTRAL = PulseFeatures(augmentation_index=0.3, perfusion_ratio=0.01, rmssd=40.0)


def _valid_tick(est: VitalEstimator, heart_rate: float = 75.0, now_ms: float = 10000.0, **kw):
    return est.process(
        NEUTRAL, heart_rate, STEADY_RR, now_ms, now_ms - 500.0,
        red_ratio=0.02, green_ratio=0.04, **kw
    )


def _invalid_tick(est: VitalEstimator, **kw):
    return est.process(NEUTRAL, 75.0, [], 20000.0, None, **kw)


class TestPulseGate:

    def test_requires_enough_intervals(self):
        v = validate_real_pulse([800.0] * 4, 1000.0, 900.0)
        assert v.valid is False
        assert v.reason == "insufficient intervals"

    def test_out_of_range_intervals_do_not_count(self):
        v = validate_real_pulse([800.0] * 4 + [100.0, 5000.0], 1000.0, 900.0)
        assert v.valid is False
        assert v.valid_intervals == 4

    def test_rejects_irregular_intervals(self):
        v = validate_real_pulse([500.0, 1200.0] * 4, 1000.0, 900.0)
        assert v.valid is False
        assert v.reason == "irregular intervals"
        assert v.cv > 0.25

    def test_rejects_stale_beat(self):
        v = validate_real_pulse(STEADY_RR, 10000.0, 5000.0)
        assert v.reason == "no recent beat"
        assert validate_real_pulse(STEADY_RR, 10000.0, None).valid is False

    def test_accepts_steady_recent_pulse(self):
        v = validate_real_pulse(STEADY_RR, 10000.0, 9500.0)
        assert v.valid is True
        assert v.valid_intervals == 8
        assert v.cv == 0.0


class TestPressureConstraint:

    def test_clamps_and_limits_pulse_pressure(self):
        assert constrain_pressure(200.0, 40.0, VitalLimits()) == (180.0, 100.0)

    def test_widens_narrow_pulse_pressure(self):
        assert constrain_pressure(95.0, 90.0, VitalLimits()) == (95.0, 70.0)

    def test_ordinary_values_untouched(self):
        assert constrain_pressure(120.0, 80.0, VitalLimits()) == (120.0, 80.0)


class TestVitalEstimator:

    def test_never_validated_reports_exact_zero(self):
        est = VitalEstimator()
        for _ in range(5):
            result = _invalid_tick(est, arrhythmia_count=3, arrhythmia_status="AF_LIKE")
            assert result.is_zero()
            assert result.pulse_validated is False
            assert result.invalid_reason == "insufficient intervals"

    def test_first_valid_tick_uses_closed_forms(self):
        est = VitalEstimator()
        result = _valid_tick(est)
        assert result.pulse_validated is True
        assert est.gate_open is True
        assert result.spo2 == pytest.approx(97.5)
        assert result.hemoglobin == pytest.approx(14.4)
        assert result.pressure.systolic == pytest.approx(117.25)
        assert result.pressure.diastolic == pytest.approx(76.25)
        assert result.glucose == pytest.approx(96.25)
        assert result.lipids.cholesterol == pytest.approx(185.0)
        assert result.lipids.triglycerides == pytest.approx(124.0)

    def test_heart_rate_falls_back_to_rr_mean(self):
        est = VitalEstimator()
        result = est.process(NEUTRAL, 0.0, STEADY_RR, 10000.0, 9500.0)
        # 800 ms -> 75 BPM
        assert result.pressure.systolic == pytest.approx(117.25)

    def test_values_are_smoothed(self):
        est = VitalEstimator()
        first = _valid_tick(est, heart_rate=75.0)
        second = _valid_tick(est, heart_rate=95.0, now_ms=10200.0)
        raw_glucose = 95.0 + 0.25 * (95.0 - 70.0)
        assert first.glucose < second.glucose < raw_glucose
        assert second.glucose == pytest.approx(0.2 * raw_glucose + 0.8 * first.glucose)

    def test_arrhythmia_passes_through_only_when_open(self):
        est = VitalEstimator()
        opened = _valid_tick(est, arrhythmia_count=2, arrhythmia_status="ECTOPIC")
        assert opened.arrhythmia_count == 2
        assert opened.arrhythmia_status == "ECTOPIC"
        closed = _invalid_tick(est, arrhythmia_count=2, arrhythmia_status="ECTOPIC")
        assert closed.arrhythmia_count == 0
        assert closed.arrhythmia_status == ""

    def test_values_decay_to_zero_after_gate_closes(self):
        est = VitalEstimator()
        valid = _valid_tick(est)
        closed = _invalid_tick(est)
        assert est.gate_open is False
        assert closed.spo2 == pytest.approx(valid.spo2 * 0.85)
        for _ in range(60):
            closed = _invalid_tick(est)
        assert closed.is_zero()

    def test_pressure_stays_consistent(self):
        est = VitalEstimator()
        for hr in (40.0, 180.0, 60.0, 150.0):
            result = _valid_tick(est, heart_rate=hr)
            pp = result.pressure.systolic - result.pressure.diastolic
            assert 25.0 - 1e-9 <= pp <= 80.0 + 1e-9
            assert 90.0 <= result.pressure.systolic <= 180.0
            assert 50.0 <= result.pressure.diastolic <= 110.0

    def test_calibration_fields_pass_through(self):
        est = VitalEstimator()
        result = _invalid_tick(est, is_calibrating=True, calibration_progress=0.4)
        assert result.is_calibrating is True
        assert result.calibration_progress == pytest.approx(0.4)

    def test_reset_returns_to_exact_zero(self):
        est = VitalEstimator()
        _valid_tick(est)
        est.reset()
        assert _invalid_tick(est).is_zero()

    def test_invalid_limits(self):
        with pytest.raises(ValueError):
            VitalLimits(decay=1.5)
