"""
Tunable parameters for every pipeline stage.

All detection thresholds are gathered in :class:`DetectionThresholds` so a
calibration profile can derive a single consistent set instead of each stage
carrying its own magic numbers.  The remaining dataclasses hold
stage-specific knobs.  Every config validates itself on construction and
raises ``ValueError`` for impossible combinations.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from .types import CalibrationProfile

# Physiological RR domain shared by every stage (30 – 200 BPM).
MIN_RR_MS = 300.0
MAX_RR_MS = 2000.0


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ValueError(message)


@dataclass(frozen=True)
class DetectionThresholds:
    """
    Contact, consensus and gain-feedback thresholds.

    Parameters
    ----------
    window_ms:
        Length of each channel's sliding window.
    max_samples:
        Hard cap on samples kept per window regardless of frame rate.
    min_brightness, max_brightness:
        Accepted range of the raw channel mean while a finger covers the lens.
    min_std:
        Floor on the gained signal standard deviation; below it the window is
        treated as a flat, uncovered or saturated sensor.
    min_range:
        Minimum peak-to-peak range of the gained window.
    require_rhythm:
        Also require self-consistent peak intervals for contact.
    consensus_ratio:
        Fraction of channels that must agree on contact.
    confirm_frames, release_frames:
        Debounce lengths.  Losing contact must take more frames than
        acquiring it.
    """

    window_ms: float = 8000.0
    max_samples: int = 512
    min_interval_ms: float = MIN_RR_MS
    max_interval_ms: float = MAX_RR_MS
    spectral_low_hz: float = 0.5
    spectral_high_hz: float = 4.0

    # contact
    min_brightness: float = 12.0
    max_brightness: float = 250.0
    min_std: float = 0.1
    min_range: float = 2.0
    require_rhythm: bool = False
    rg_ratio_bounds: Optional[Tuple[float, float]] = None

    # peak detection
    peak_height_k: float = 0.3
    peak_prominence_k: float = 0.5
    jump_threshold_bpm: float = 20.0
    jump_blend: float = 0.3

    # consensus / debounce
    consensus_ratio: float = 0.33
    min_coverage: float = 0.20
    max_frame_diff: float = 18.0
    confirm_frames: int = 8
    release_frames: int = 12
    min_channel_quality: float = 25.0

    # gain feedback
    gain_min: float = 0.1
    gain_max: float = 10.0
    gain_low_quality: float = 30.0
    gain_nudge_up: float = 0.05
    gain_nudge_down: float = 0.08
    gain_recover: float = 0.10
    gain_high: float = 3.0
    gain_low: float = 0.5
    gain_cooldown_frames: int = 10

    def __post_init__(self) -> None:
        _require(self.window_ms > 0, "window_ms must be positive")
        _require(self.max_samples >= 8, "max_samples must be at least 8")
        _require(
            0 < self.min_interval_ms < self.max_interval_ms,
            "min_interval_ms must be positive and below max_interval_ms",
        )
        _require(
            0 < self.spectral_low_hz < self.spectral_high_hz,
            "spectral band must satisfy 0 < low < high",
        )
        _require(
            self.min_brightness < self.max_brightness,
            "min_brightness must be below max_brightness",
        )
        _require(0 < self.consensus_ratio <= 1, "consensus_ratio must be in (0, 1]")
        _require(self.confirm_frames >= 1, "confirm_frames must be >= 1")
        _require(
            self.release_frames > self.confirm_frames,
            "release_frames must exceed confirm_frames",
        )
        _require(
            0 < self.gain_min < 1 < self.gain_max,
            "gain bounds must satisfy 0 < gain_min < 1 < gain_max",
        )
        _require(0 <= self.jump_blend <= 1, "jump_blend must be in [0, 1]")
        if self.rg_ratio_bounds is not None:
            lo, hi = self.rg_ratio_bounds
            _require(lo < hi, "rg_ratio_bounds must be (low, high) with low < high")

    @classmethod
    def from_profile(
        cls,
        profile: CalibrationProfile,
        base: "DetectionThresholds | None" = None,
    ) -> "DetectionThresholds":
        """Derive thresholds tuned to a calibrated user/device."""
        base = base or cls()
        min_brightness = max(base.min_brightness, profile.contact_threshold)
        min_brightness = min(min_brightness, base.max_brightness - 1.0)
        min_std = max(base.min_std, 0.5 * profile.noise_level)
        # A noisy calibration must not demand more range than the pulse has.
        min_range = max(
            base.min_range,
            min(profile.min_signal_range, 0.5 * profile.signal_amplitude),
        )
        return replace(
            base,
            min_brightness=min_brightness,
            min_std=min_std,
            min_range=min_range,
            rg_ratio_bounds=profile.rg_ratio_bounds,
        )


@dataclass(frozen=True)
class BeatDetectorConfig:
    warmup_ms: float = 1000.0
    min_interval_ms: float = MIN_RR_MS
    max_interval_ms: float = MAX_RR_MS
    median_size: int = 5
    moving_average_size: int = 3
    ema_alpha: float = 0.4
    baseline_alpha: float = 0.02
    ac_window_ms: float = 2500.0
    rr_history: int = 30
    bpm_history: int = 12
    bpm_median_n: int = 5
    bpm_ema_alpha: float = 0.3
    rr_tolerance: float = 0.6
    high_confidence: float = 0.9
    resync_after: int = 3

    signal_threshold: float = 0.3
    confidence_threshold: float = 0.4
    derivative_threshold: float = 0.0
    signal_threshold_bounds: Tuple[float, float] = (0.1, 0.6)
    confidence_threshold_bounds: Tuple[float, float] = (0.25, 0.7)
    derivative_threshold_bounds: Tuple[float, float] = (0.0, 0.005)
    tune_every_beats: int = 5
    tune_max_step: float = 0.05

    weak_amplitude: float = 0.05
    weak_frames: int = 45

    def __post_init__(self) -> None:
        _require(self.warmup_ms >= 0, "warmup_ms must be non-negative")
        _require(
            0 < self.min_interval_ms < self.max_interval_ms,
            "min_interval_ms must be positive and below max_interval_ms",
        )
        _require(self.median_size >= 1 and self.median_size % 2 == 1,
                 "median_size must be a positive odd number")
        _require(self.moving_average_size >= 1, "moving_average_size must be >= 1")
        for name in ("ema_alpha", "baseline_alpha", "bpm_ema_alpha"):
            value = getattr(self, name)
            _require(0 < value <= 1, f"{name} must be in (0, 1]")
        _require(self.baseline_alpha < self.ema_alpha,
                 "baseline must adapt slower than the signal smoother")
        _require(self.rr_history >= 2, "rr_history must be >= 2")
        _require(self.bpm_history >= self.bpm_median_n >= 1,
                 "bpm_history must be >= bpm_median_n >= 1")
        _require(0 < self.rr_tolerance < 1, "rr_tolerance must be in (0, 1)")
        for name in ("signal_threshold", "confidence_threshold", "derivative_threshold"):
            lo, hi = getattr(self, f"{name}_bounds")
            _require(lo <= getattr(self, name) <= hi,
                     f"{name} must lie within its bounds")
        _require(self.tune_every_beats >= 1, "tune_every_beats must be >= 1")
        _require(self.weak_frames >= 1, "weak_frames must be >= 1")


@dataclass(frozen=True)
class QualityConfig:
    window_ms: float = 6000.0
    min_samples: int = 30
    min_duration_ms: float = 2500.0
    min_dc: float = 10.0
    min_perfusion: float = 0.05
    good_perfusion: float = 0.3
    max_perfusion: float = 25.0
    min_snr_db: float = 1.0
    good_snr_db: float = 6.0
    max_snr_db: float = 30.0
    min_periodicity: float = 0.1
    good_periodicity: float = 0.3
    max_drift_pct: float = 4.0
    min_bpm: float = 40.0
    max_bpm: float = 180.0
    valid_quality: float = 30.0

    def __post_init__(self) -> None:
        _require(self.window_ms > 0, "window_ms must be positive")
        _require(self.min_samples >= 8, "min_samples must be >= 8")
        _require(self.min_perfusion < self.good_perfusion < self.max_perfusion,
                 "perfusion thresholds must be increasing")
        _require(self.min_snr_db < self.good_snr_db <= self.max_snr_db,
                 "SNR thresholds must be increasing")
        _require(self.min_periodicity < self.good_periodicity <= 1,
                 "periodicity thresholds must be increasing")
        _require(self.max_drift_pct > 0, "max_drift_pct must be positive")
        _require(0 < self.min_bpm < self.max_bpm, "BPM range must be increasing")


@dataclass(frozen=True)
class CalibrationConfig:
    duration_ms: float = 5000.0
    min_samples: int = 90
    expected_samples: int = 150
    expected_peaks: int = 5
    min_red: float = 20.0
    min_green: float = 10.0

    def __post_init__(self) -> None:
        _require(self.duration_ms > 0, "duration_ms must be positive")
        _require(1 <= self.min_samples <= self.expected_samples,
                 "min_samples must be in [1, expected_samples]")
        _require(self.expected_peaks >= 1, "expected_peaks must be >= 1")


@dataclass(frozen=True)
class VitalLimits:
    min_valid_intervals: int = 5
    max_rr_cv: float = 0.25
    max_beat_age_ms: float = 3000.0
    ema_alpha: float = 0.2
    decay: float = 0.85
    snap_epsilon: float = 0.5

    spo2: Tuple[float, float] = (70.0, 100.0)
    glucose: Tuple[float, float] = (70.0, 180.0)
    hemoglobin: Tuple[float, float] = (8.0, 18.0)
    systolic: Tuple[float, float] = (90.0, 180.0)
    diastolic: Tuple[float, float] = (50.0, 110.0)
    pulse_pressure: Tuple[float, float] = (25.0, 80.0)
    cholesterol: Tuple[float, float] = (130.0, 240.0)
    triglycerides: Tuple[float, float] = (50.0, 200.0)

    def __post_init__(self) -> None:
        _require(self.min_valid_intervals >= 2, "min_valid_intervals must be >= 2")
        _require(self.max_rr_cv > 0, "max_rr_cv must be positive")
        _require(0 < self.ema_alpha <= 1, "ema_alpha must be in (0, 1]")
        _require(0 < self.decay < 1, "decay must be in (0, 1)")
        _require(self.snap_epsilon > 0, "snap_epsilon must be positive")
        for name in ("spo2", "glucose", "hemoglobin", "systolic", "diastolic",
                     "pulse_pressure", "cholesterol", "triglycerides"):
            lo, hi = getattr(self, name)
            _require(0 < lo < hi, f"{name} range must satisfy 0 < low < high")


@dataclass(frozen=True)
class RhythmConfig:
    window: int = 64
    min_intervals: int = 10
    retrigger_ms: float = 2000.0
    rmssd_threshold: float = 70.0
    cv_threshold: float = 0.12
    entropy_threshold: float = 3.0
    entropy_bin_ms: float = 25.0
    af_sd1: float = 40.0
    af_ratio: float = 0.6
    irregular_sd1: float = 25.0
    irregular_ratio: float = 0.4
    ectopic_distance: float = 0.25
    pattern_fraction: float = 0.85
    pattern_cv: float = 0.1

    def __post_init__(self) -> None:
        _require(self.window >= self.min_intervals >= 4,
                 "window must be >= min_intervals >= 4")
        _require(self.retrigger_ms >= 0, "retrigger_ms must be non-negative")
        _require(0 < self.pattern_fraction <= 1, "pattern_fraction must be in (0, 1]")
        _require(self.entropy_bin_ms > 0, "entropy_bin_ms must be positive")


@dataclass(frozen=True)
class SessionConfig:
    n_channels: int = 6
    vitals_interval_ms: float = 200.0
    calibrate: bool = True
    feature_window_ms: float = 6000.0

    def __post_init__(self) -> None:
        _require(self.n_channels >= 1, "n_channels must be >= 1")
        _require(self.vitals_interval_ms > 0, "vitals_interval_ms must be positive")
        _require(self.feature_window_ms > 0, "feature_window_ms must be positive")


def is_valid_rr(rr_ms: float) -> bool:
    """True for a finite interval inside the physiological RR domain."""
    return math.isfinite(rr_ms) and MIN_RR_MS <= rr_ms <= MAX_RR_MS
