"""
Per-session calibration.

The learner collects a few seconds of frame statistics while the user holds
a finger on the lens and derives a :class:`CalibrationProfile`.  Every
threshold in the profile is an explicit function of the collected
statistics:

    contact_threshold = max(25, 0.3 · red_baseline)
    rg_ratio_bounds   = rg_mean ± 2.5 · max(rg_std, 0.2), within [0.5, 5]
    peak_threshold    = 0.25 · signal_amplitude
    min_signal_range  = 3 · noise_level

Confidence weighs sample adequacy (30 %), detected peaks (40 %) and red
baseline stability (30 %).
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import numpy as np
from scipy.signal import find_peaks

from .config import CalibrationConfig
from .dsp import moving_average
from .types import CalibrationProfile, CalibrationState, RawSample

logger = logging.getLogger(__name__)


class CalibrationLearner:
    """
    ``IDLE → COLLECTING → ANALYZING → COMPLETE | FAILED`` state machine.

    Time is taken from sample timestamps, never from the wall clock, so the
    learner behaves identically on live and recorded input.
    """

    def __init__(self, config: CalibrationConfig | None = None) -> None:
        self.config = config or CalibrationConfig()
        self._state = CalibrationState.IDLE
        self._samples: List[RawSample] = []
        self._start_ms: Optional[float] = None
        self._elapsed_ms = 0.0
        self._profile: Optional[CalibrationProfile] = None
        self.failure_reason = ""

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> CalibrationState:
        return self._state

    @property
    def profile(self) -> Optional[CalibrationProfile]:
        return self._profile

    @property
    def progress(self) -> float:
        """Fraction of the collection period elapsed (0 – 1)."""
        if self._state in (CalibrationState.COMPLETE, CalibrationState.FAILED):
            return 1.0
        return float(np.clip(self._elapsed_ms / self.config.duration_ms, 0.0, 1.0))

    @property
    def is_calibrating(self) -> bool:
        return self._state in (CalibrationState.COLLECTING, CalibrationState.ANALYZING)

    def start(self) -> None:
        """Begin a fresh collection, discarding any previous result."""
        self._samples = []
        self._start_ms = None
        self._elapsed_ms = 0.0
        self._profile = None
        self.failure_reason = ""
        self._state = CalibrationState.COLLECTING
        logger.info("Calibration started (%.1f s)", self.config.duration_ms / 1000.0)

    def add_sample(self, sample: RawSample) -> CalibrationState:
        """
        Feed one frame.  Implausible samples (too dark) are not kept but
        still advance the clock.  Analysis runs automatically once the
        collection period has elapsed.
        """
        if self._state is not CalibrationState.COLLECTING:
            return self._state
        if self._start_ms is None:
            self._start_ms = sample.timestamp_ms
        self._elapsed_ms = sample.timestamp_ms - self._start_ms

        cfg = self.config
        if sample.red_mean > cfg.min_red and sample.green_mean > cfg.min_green:
            self._samples.append(sample)

        if self._elapsed_ms >= cfg.duration_ms:
            self._analyze()
        return self._state

    def finish(self) -> CalibrationState:
        """Stop collecting now and analyse whatever was gathered."""
        if self._state is CalibrationState.COLLECTING:
            self._analyze()
        return self._state

    def realtime_stats(self) -> Dict[str, float]:
        """Running statistics while collecting, for progress displays."""
        if not self._samples:
            return {"sample_count": 0, "red_mean": 0.0, "green_mean": 0.0, "progress": self.progress}
        reds = np.array([s.red_mean for s in self._samples])
        greens = np.array([s.green_mean for s in self._samples])
        return {
            "sample_count": len(self._samples),
            "red_mean": float(reds.mean()),
            "green_mean": float(greens.mean()),
            "progress": self.progress,
        }

    def reset(self) -> None:
        """Back to IDLE; the profile is discarded."""
        self._state = CalibrationState.IDLE
        self._samples = []
        self._start_ms = None
        self._elapsed_ms = 0.0
        self._profile = None
        self.failure_reason = ""

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _analyze(self) -> None:
        self._state = CalibrationState.ANALYZING
        n = len(self._samples)
        if n < self.config.min_samples:
            self.failure_reason = (
                f"insufficient samples: {n} collected, {self.config.min_samples} required"
            )
            self._state = CalibrationState.FAILED
            logger.warning("Calibration failed – %s", self.failure_reason)
            return

        self._profile = self._build_profile()
        self._state = CalibrationState.COMPLETE
        logger.info(
            "Calibration complete – red=%.1f rg=%.2f amplitude=%.2f peaks=%d confidence=%.0f",
            self._profile.red_baseline,
            self._profile.rg_ratio_mean,
            self._profile.signal_amplitude,
            self._profile.peaks_detected,
            self._profile.confidence,
        )

    def _build_profile(self) -> CalibrationProfile:
        cfg = self.config
        samples = self._samples
        times = np.array([s.timestamp_ms for s in samples], dtype=np.float64)
        reds = np.array([s.red_mean for s in samples], dtype=np.float64)
        greens = np.array([s.green_mean for s in samples], dtype=np.float64)
        blues = np.array([s.blue_mean for s in samples], dtype=np.float64)

        red_baseline = float(reds.mean())
        red_std = float(reds.std())
        rg = reds / np.maximum(greens, 1e-6)
        rg_mean, rg_std = float(rg.mean()), float(rg.std())

        span_s = max((times[-1] - times[0]) / 1000.0, 1e-3)
        fs = (len(samples) - 1) / span_s
        pulsatile = reds - moving_average(reds, max(3, int(round(fs))))
        amplitude = float(np.percentile(pulsatile, 95) - np.percentile(pulsatile, 5))
        noise = float(np.mean(np.abs(np.diff(pulsatile))))

        peak_threshold = 0.25 * amplitude
        peaks, _ = find_peaks(
            pulsatile, height=peak_threshold, distance=max(1, int(0.3 * fs))
        )

        width = 2.5 * max(rg_std, 0.2)
        lo = float(np.clip(rg_mean - width, 0.5, 4.9))
        hi = float(np.clip(rg_mean + width, lo + 0.1, 5.0))

        sample_score = min(1.0, len(samples) / cfg.expected_samples) * 100.0
        peak_score = min(1.0, len(peaks) / cfg.expected_peaks) * 100.0
        stability = float(np.clip(100.0 - 200.0 * red_std / max(red_baseline, 1e-6), 0.0, 100.0))
        confidence = 0.3 * sample_score + 0.4 * peak_score + 0.3 * stability

        return CalibrationProfile(
            red_baseline=red_baseline,
            green_baseline=float(greens.mean()),
            blue_baseline=float(blues.mean()),
            red_std=red_std,
            green_std=float(greens.std()),
            blue_std=float(blues.std()),
            rg_ratio_mean=rg_mean,
            rg_ratio_std=rg_std,
            signal_amplitude=amplitude,
            noise_level=noise,
            contact_threshold=max(25.0, 0.3 * red_baseline),
            rg_ratio_bounds=(lo, hi),
            peak_threshold=peak_threshold,
            min_signal_range=3.0 * noise,
            peaks_detected=int(len(peaks)),
            confidence=float(confidence),
            sample_count=len(samples),
            timestamp_ms=float(times[-1]),
        )
