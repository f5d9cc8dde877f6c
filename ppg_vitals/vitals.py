"""
Vital-sign estimation behind a real-pulse gate.

Nothing is computed until :func:`validate_real_pulse` accepts the RR history.
While the gate is closed previously reported values decay geometrically
toward zero; a session that never opened the gate reports exact zeros.

The closed forms below are empirical camera-PPG surrogates.  They give
plausible trends, not diagnostic values.

    SpO2        = 110 − 25 · R,  R = (AC/DC)_red / (AC/DC)_green
    systolic    = 115 + 0.45·(HR − 70) + 25·(AI − 0.3) − 150·(PR − 0.01)
    diastolic   = 75 + 0.25·(HR − 70) + 10·(AI − 0.3)
    glucose     = 95 + 0.25·(HR − 70) + 60·AV
    hemoglobin  = 14 − 4·(R − 0.6)
    cholesterol = 185 + 60·(AI − 0.3) − 0.2·(RMSSD − 40)
    triglycer.  = 120 + 0.8·(HR − 70) + 50·(AI − 0.3)

(HR heart rate, AI augmentation index, PR perfusion ratio, AV amplitude
variability.)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from .config import VitalLimits
from .features import valid_rr
from .types import BloodPressure, Lipids, PulseFeatures, PulseValidation, VitalSignsResult

logger = logging.getLogger(__name__)

VITAL_FIELDS = (
    "spo2", "glucose", "hemoglobin", "systolic", "diastolic", "cholesterol", "triglycerides",
)


def validate_real_pulse(
    rr_intervals: Sequence[float],
    now_ms: float,
    last_beat_ms: Optional[float],
    limits: VitalLimits | None = None,
) -> PulseValidation:
    """
    Decide whether the RR history comes from a genuine pulse.

    Requires at least ``min_valid_intervals`` in-range intervals, a
    coefficient of variation no larger than ``max_rr_cv`` and a beat within
    the last ``max_beat_age_ms``.
    """
    limits = limits or VitalLimits()
    rr = valid_rr(rr_intervals)
    if len(rr) < limits.min_valid_intervals:
        return PulseValidation(False, len(rr), 0.0, "insufficient intervals")
    cv = float(np.std(rr) / np.mean(rr))
    if cv > limits.max_rr_cv:
        return PulseValidation(False, len(rr), cv, "irregular intervals")
    if last_beat_ms is None or now_ms - last_beat_ms > limits.max_beat_age_ms:
        return PulseValidation(False, len(rr), cv, "no recent beat")
    return PulseValidation(True, len(rr), cv)


@dataclass
class _VitalState:
    spo2: float = 0.0
    glucose: float = 0.0
    hemoglobin: float = 0.0
    systolic: float = 0.0
    diastolic: float = 0.0
    cholesterol: float = 0.0
    triglycerides: float = 0.0


def _clamp(value: float, bounds: Tuple[float, float]) -> float:
    return float(np.clip(value, *bounds))


def constrain_pressure(
    systolic: float, diastolic: float, limits: VitalLimits
) -> Tuple[float, float]:
    """Clamp both pressures and keep their difference inside the pulse-pressure range."""
    systolic = _clamp(systolic, limits.systolic)
    diastolic = _clamp(diastolic, limits.diastolic)
    pp = _clamp(systolic - diastolic, limits.pulse_pressure)
    diastolic = systolic - pp
    if diastolic < limits.diastolic[0]:
        diastolic = limits.diastolic[0]
        systolic = min(limits.systolic[1], max(systolic, diastolic + limits.pulse_pressure[0]))
    elif diastolic > limits.diastolic[1]:
        diastolic = limits.diastolic[1]
        systolic = min(limits.systolic[1], diastolic + pp)
    return systolic, diastolic


class VitalEstimator:
    """
    Gated, smoothed, clamped vital-sign estimator.

    Parameters
    ----------
    limits:
        Gate parameters, smoothing, decay and physiological ranges.
    """

    def __init__(self, limits: VitalLimits | None = None) -> None:
        self.limits = limits or VitalLimits()
        self._state = _VitalState()
        self._open = False
        self._ever_validated = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def validate_real_pulse(
        self, rr_intervals: Sequence[float], now_ms: float, last_beat_ms: Optional[float]
    ) -> PulseValidation:
        return validate_real_pulse(rr_intervals, now_ms, last_beat_ms, self.limits)

    def process(
        self,
        features: PulseFeatures,
        heart_rate: float,
        rr_intervals: Sequence[float],
        now_ms: float,
        last_beat_ms: Optional[float],
        red_ratio: float = 0.0,
        green_ratio: float = 0.0,
        arrhythmia_count: int = 0,
        arrhythmia_status: str = "",
        is_calibrating: bool = False,
        calibration_progress: float = 0.0,
    ) -> VitalSignsResult:
        """
        Produce one vitals tick.

        *red_ratio* and *green_ratio* are the AC/DC ratios of the red and
        green channels over the same window.  Arrhythmia fields are passed
        through only while the gate is open.
        """
        validation = self.validate_real_pulse(rr_intervals, now_ms, last_beat_ms)
        if not validation.valid:
            if self._open:
                logger.info("Pulse gate closed: %s", validation.reason)
            self._open = False
            self._decay()
            result = self._result(False, validation.reason)
        else:
            if not self._open:
                logger.info("Pulse gate opened (%d intervals, cv=%.3f)",
                            validation.valid_intervals, validation.cv)
            restart = not self._open
            self._open = True
            self._ever_validated = True
            rr = valid_rr(rr_intervals)
            hr = heart_rate if heart_rate > 0 else 60000.0 / float(np.mean(rr))
            self._update(self._estimate(features, hr, red_ratio, green_ratio), restart)
            result = self._result(True, "")
            result.arrhythmia_count = arrhythmia_count
            result.arrhythmia_status = arrhythmia_status

        result.is_calibrating = is_calibrating
        result.calibration_progress = calibration_progress
        return result

    @property
    def gate_open(self) -> bool:
        return self._open

    def reset(self) -> None:
        """Drop every estimate; the next tick starts from exact zeros."""
        self._state = _VitalState()
        self._open = False
        self._ever_validated = False

    def full_reset(self) -> None:
        self.reset()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _estimate(
        self, f: PulseFeatures, hr: float, red_ratio: float, green_ratio: float
    ) -> _VitalState:
        lim = self.limits
        dhr = hr - 70.0
        ai = f.augmentation_index - 0.3 if f.augmentation_index > 0 else 0.0
        pr = f.perfusion_ratio - 0.01 if f.perfusion_ratio > 0 else 0.0

        if red_ratio > 0 and green_ratio > 0:
            r = red_ratio / green_ratio
            spo2 = _clamp(110.0 - 25.0 * r, lim.spo2)
            hemoglobin = _clamp(14.0 - 4.0 * (r - 0.6), lim.hemoglobin)
        else:
            spo2, hemoglobin = self._state.spo2, self._state.hemoglobin

        systolic, diastolic = constrain_pressure(
            115.0 + 0.45 * dhr + 25.0 * ai - 150.0 * pr,
            75.0 + 0.25 * dhr + 10.0 * ai,
            lim,
        )
        return _VitalState(
            spo2=spo2,
            glucose=_clamp(95.0 + 0.25 * dhr + 60.0 * f.amplitude_variability, lim.glucose),
            hemoglobin=hemoglobin,
            systolic=systolic,
            diastolic=diastolic,
            cholesterol=_clamp(185.0 + 60.0 * ai - 0.2 * (f.rmssd - 40.0), lim.cholesterol),
            triglycerides=_clamp(120.0 + 0.8 * dhr + 50.0 * ai, lim.triglycerides),
        )

    def _update(self, estimate: _VitalState, restart: bool) -> None:
        alpha = self.limits.ema_alpha
        for name in VITAL_FIELDS:
            new = getattr(estimate, name)
            old = getattr(self._state, name)
            if restart or old == 0.0 or new == 0.0:
                value = new
            else:
                value = alpha * new + (1.0 - alpha) * old
            setattr(self._state, name, value)

    def _decay(self) -> None:
        if not self._ever_validated:
            return
        for name in VITAL_FIELDS:
            value = getattr(self._state, name) * self.limits.decay
            setattr(self._state, name, 0.0 if abs(value) < self.limits.snap_epsilon else value)

    def _result(self, validated: bool, reason: str) -> VitalSignsResult:
        s = self._state
        return VitalSignsResult(
            spo2=s.spo2,
            glucose=s.glucose,
            hemoglobin=s.hemoglobin,
            pressure=BloodPressure(systolic=s.systolic, diastolic=s.diastolic),
            lipids=Lipids(cholesterol=s.cholesterol, triglycerides=s.triglycerides),
            pulse_validated=validated,
            invalid_reason=reason,
        )
