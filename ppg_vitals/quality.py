"""
Signal-quality scoring.

Metrics
-------
perfusion index
    AC amplitude (5th – 95th percentile spread of the filtered signal)
    divided by the DC level of the raw signal, in percent.
SNR
    Variance of the smoothed signal against the noise variance estimated
    from first differences, in dB.
periodicity
    Largest normalised autocorrelation over lags for 40 – 180 BPM.
stability
    One minus the DC drift across the window relative to the allowed drift.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np

from .buffers import TimeWindow
from .config import QualityConfig
from .dsp import moving_average, resample_uniform
from .types import CalibrationProfile, InvalidReason, QualityResult

logger = logging.getLogger(__name__)


def _score(value: float, low: float, high: float) -> float:
    return float(np.clip((value - low) / (high - low), 0.0, 1.0))


def autocorrelation_periodicity(
    signal: np.ndarray, fs: float, min_bpm: float, max_bpm: float
) -> float:
    """Max normalised autocorrelation over the lags of a physiological pulse."""
    x = np.asarray(signal, dtype=np.float64)
    n = len(x)
    if n < 4 or fs <= 0:
        return 0.0
    x = x - x.mean()
    spectrum = np.fft.rfft(x, 2 * n)
    acf = np.fft.irfft(spectrum * np.conj(spectrum))[:n]
    if acf[0] <= 0:
        return 0.0
    acf = acf / acf[0]
    lo = max(1, int(math.floor(fs * 60.0 / max_bpm)))
    hi = min(n - 1, int(math.ceil(fs * 60.0 / min_bpm)))
    if hi <= lo:
        return 0.0
    return float(np.clip(acf[lo:hi + 1].max(), 0.0, 1.0))


class QualityAnalyzer:
    """
    Rolling quality analyser over raw and filtered samples.

    Parameters
    ----------
    config:
        Thresholds and window length.
    """

    def __init__(self, config: QualityConfig | None = None) -> None:
        self.config = config or QualityConfig()
        self._raw = TimeWindow(self.config.window_ms, 1024)
        self._filtered = TimeWindow(self.config.window_ms, 1024)
        self._min_dc = self.config.min_dc

    def push(self, raw_value: float, filtered_value: float, timestamp_ms: float) -> None:
        if not (math.isfinite(raw_value) and math.isfinite(filtered_value)):
            return
        self._raw.append(timestamp_ms, raw_value)
        self._filtered.append(timestamp_ms, filtered_value)

    def analyze(self) -> QualityResult:
        """
        Score the current window.

        Returns ``valid=False`` with ``invalid_reason=None`` while there is
        not yet enough data.
        """
        cfg = self.config
        if len(self._raw) < cfg.min_samples or self._raw.span_ms < cfg.min_duration_ms:
            return QualityResult(quality=0.0, valid=False, invalid_reason=None)

        raw = self._raw.values()
        filtered = self._filtered.values()
        dc = float(np.mean(raw))
        if dc < self._min_dc or float(np.std(filtered)) < 1e-6:
            return QualityResult(quality=0.0, valid=False, invalid_reason=InvalidReason.NO_SIGNAL)

        ac = float(np.percentile(filtered, 95) - np.percentile(filtered, 5))
        perfusion = ac / dc * 100.0

        smoothed = moving_average(filtered, 5)
        noise = float(np.mean(np.diff(filtered) ** 2)) / 2.0
        signal_var = float(np.var(smoothed))
        if noise <= 0:
            snr = cfg.max_snr_db
        else:
            snr = 10.0 * math.log10(max(signal_var / noise, 1e-12))
        snr = float(np.clip(snr, 0.0, cfg.max_snr_db))

        uniform, fs = resample_uniform(self._filtered.times(), filtered, len(filtered))
        periodicity = autocorrelation_periodicity(uniform, fs, cfg.min_bpm, cfg.max_bpm)

        blocks = np.array_split(raw, 4)
        block_means = np.array([b.mean() for b in blocks if len(b)])
        drift_pct = float(np.ptp(block_means)) / dc * 100.0
        stability = float(np.clip(1.0 - drift_pct / cfg.max_drift_pct, 0.0, 1.0))

        quality = 100.0 * (
            0.3 * _score(perfusion, cfg.min_perfusion, cfg.good_perfusion)
            + 0.25 * _score(snr, cfg.min_snr_db, cfg.good_snr_db)
            + 0.25 * _score(periodicity, cfg.min_periodicity, cfg.good_periodicity)
            + 0.2 * stability
        )

        reason: Optional[InvalidReason] = None
        if perfusion > cfg.max_perfusion or drift_pct > cfg.max_drift_pct:
            reason = InvalidReason.MOTION_ARTIFACT
        elif perfusion < cfg.min_perfusion:
            reason = InvalidReason.LOW_PULSATILITY
        elif snr < cfg.min_snr_db or periodicity < cfg.min_periodicity or quality < cfg.valid_quality:
            reason = InvalidReason.TOO_NOISY

        if reason is not None:
            logger.debug("quality %.0f invalid: %s", quality, reason.name)
        return QualityResult(
            quality=float(quality),
            valid=reason is None,
            invalid_reason=reason,
            perfusion_index=perfusion,
            snr_db=snr,
            periodicity=periodicity,
            stability=stability,
        )

    def apply_profile(self, profile: CalibrationProfile) -> None:
        """A DC level under half the calibrated red baseline counts as no signal."""
        self._min_dc = max(self.config.min_dc, 0.5 * profile.red_baseline)

    def reset(self) -> None:
        self._raw.clear()
        self._filtered.clear()

    def full_reset(self) -> None:
        self.reset()
        self._min_dc = self.config.min_dc
