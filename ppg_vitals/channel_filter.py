"""
Single-channel PPG analyser.

Algorithm
---------
1. Keep the last ``window_ms`` of gained samples in a time-keyed window;
   the gain scales each sample's deviation from a slow DC estimate.
2. Resample onto a uniform grid at a fixed analysis rate (at most 256
   points), remove a linear trend, band-limit to 0.5 – 4 Hz and smooth with
   a Savitzky–Golay filter.  The filter design and the spectral basis are
   built once per analysis rate.
3. Estimate BPM from peak intervals (preferred) or from a Goertzel sweep
   over the physiological band (fallback).
4. Damp large jumps against the previous estimate.
5. Decide contact: the raw mean must sit in the brightness window, while
   the spread and peak-to-peak range of the *gained* recent samples must
   clear absolute floors.  A channel's gain therefore decides whether a
   marginal pulse counts.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

import numpy as np
from scipy.signal import detrend, find_peaks

from .buffers import TimeWindow
from .config import DetectionThresholds
from .dsp import (
    bandpass,
    build_bandpass,
    goertzel_basis,
    goertzel_spectrum,
    parabolic_offset,
    resample_at,
    savgol_window,
    smooth,
)
from .types import ChannelEstimate

logger = logging.getLogger(__name__)

MIN_SAMPLES = 8
MIN_SPAN_MS = 2000.0
CONTACT_WINDOW_MS = 2000.0
SPECTRAL_STEP_HZ = 0.05
SNR_BAND_HZ = 0.3
DC_ALPHA = 0.02
ANALYSIS_FS_STEP = 5.0


class ChannelFilter:
    """
    Rolling per-channel BPM estimator with its own gain.

    Parameters
    ----------
    channel_id:
        Index reported in every :class:`ChannelEstimate`.
    thresholds:
        Shared detection thresholds; defaults when omitted.
    initial_gain:
        Starting gain, restored by :meth:`full_reset`.
    max_points:
        Largest uniform grid the window is resampled onto.
    """

    def __init__(
        self,
        channel_id: int = 0,
        thresholds: DetectionThresholds | None = None,
        initial_gain: float = 1.0,
        max_points: int = 256,
    ) -> None:
        self.channel_id = channel_id
        self.thresholds = thresholds or DetectionThresholds()
        if not (self.thresholds.gain_min <= initial_gain <= self.thresholds.gain_max):
            raise ValueError(
                f"initial_gain {initial_gain} outside "
                f"[{self.thresholds.gain_min}, {self.thresholds.gain_max}]"
            )
        self.initial_gain = float(initial_gain)
        self.max_points = max_points

        self._gain = self.initial_gain
        self._window = TimeWindow(self.thresholds.window_ms, self.thresholds.max_samples)
        self._raw = TimeWindow(self.thresholds.window_ms, self.thresholds.max_samples)
        self._last_bpm: Optional[float] = None
        self._dc: Optional[float] = None

        self._design_fs: Optional[float] = None
        self._sos: Optional[np.ndarray] = None
        self._smooth_window = 5
        self._freqs = np.array([])
        self._basis: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def gain(self) -> float:
        return self._gain

    @property
    def analysis_fs(self) -> Optional[float]:
        """Rate of the uniform analysis grid, once a window has been analysed."""
        return self._design_fs

    @property
    def last_bpm(self) -> Optional[float]:
        return self._last_bpm

    def __len__(self) -> int:
        return len(self._window)

    def push_sample(self, raw_value: float, timestamp_ms: float) -> None:
        """
        Append one raw sample; the current gain applies from now on.

        The gain scales the sample's deviation from a slow DC estimate, so a
        gain change alters pulse amplitude without stepping the baseline.
        """
        if not math.isfinite(raw_value) or not math.isfinite(timestamp_ms):
            logger.debug("channel %d: dropping non-finite sample", self.channel_id)
            return
        if self._dc is None:
            self._dc = raw_value
        else:
            self._dc += DC_ALPHA * (raw_value - self._dc)
        self._window.append(timestamp_ms, self._gain * (raw_value - self._dc))
        self._raw.append(timestamp_ms, raw_value)

    def adjust_gain_rel(self, delta: float) -> float:
        """
        Multiply the gain by ``1 + delta`` and clamp it to the allowed range.

        Non-finite deltas are ignored.  Returns the new gain.
        """
        if not math.isfinite(delta):
            return self._gain
        t = self.thresholds
        self._gain = float(np.clip(self._gain * (1.0 + delta), t.gain_min, t.gain_max))
        return self._gain

    def analyze(self) -> ChannelEstimate:
        """Estimate BPM, SNR, quality and contact from the current window."""
        if len(self._window) < MIN_SAMPLES:
            return self._empty()

        contact, intervals = False, np.array([])
        bpm: Optional[float] = None
        snr = 0.0
        peak_count = 0

        if self._window.span_ms >= MIN_SPAN_MS:
            x, fs = self._conditioned()
            if fs > 0 and np.std(x) > 1e-9:
                peak_bpm, intervals, peak_count = self._peak_bpm(x, fs)
                spectral_bpm, snr = self._spectral_bpm(x, fs)
                bpm = self._damp(peak_bpm if peak_bpm is not None else spectral_bpm)

        raw_recent, gained_recent = self._recent()
        contact = self._contact(raw_recent, gained_recent, intervals)
        amplitude = float(np.ptp(gained_recent)) if len(gained_recent) else 0.0
        quality = self._quality(snr, intervals, amplitude) if bpm is not None else 0.0
        return ChannelEstimate(
            channel_id=self.channel_id,
            bpm=bpm,
            snr=snr,
            quality=quality,
            contact_detected=contact,
            gain=self._gain,
            peak_count=peak_count,
        )

    def apply_thresholds(self, thresholds: DetectionThresholds) -> None:
        """Switch to new thresholds, keeping buffered samples."""
        self.thresholds = thresholds
        self._gain = float(np.clip(self._gain, thresholds.gain_min, thresholds.gain_max))
        self._design_fs = None

    def reset(self) -> None:
        """Clear buffered samples and the jump-damping reference."""
        self._window.clear()
        self._raw.clear()
        self._last_bpm = None
        self._dc = None

    def full_reset(self) -> None:
        """:meth:`reset` and restore the initial gain."""
        self.reset()
        self._gain = self.initial_gain

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _empty(self) -> ChannelEstimate:
        return ChannelEstimate(
            channel_id=self.channel_id,
            bpm=None,
            snr=0.0,
            quality=0.0,
            contact_detected=False,
            gain=self._gain,
        )

    def _conditioned(self) -> Tuple[np.ndarray, float]:
        """Uniformly resampled, detrended, band-limited, smoothed window."""
        times = self._window.times()
        values = self._window.values()
        span_s = float(times[-1] - times[0]) / 1000.0
        if span_s <= 0:
            return values, 0.0
        # the grid never needs more than max_points over the whole window
        rate = min((len(times) - 1) / span_s, self.max_points / span_s)
        if self._design_fs is None or abs(rate - self._design_fs) > 0.75 * ANALYSIS_FS_STEP:
            self._build_analysis(
                max(ANALYSIS_FS_STEP, round(rate / ANALYSIS_FS_STEP) * ANALYSIS_FS_STEP)
            )
        fs = self._design_fs
        x = resample_at(times, values, fs, self.max_points)
        x = detrend(x, type="linear")
        x = bandpass(x, fs, sos=self._sos)
        x = smooth(x, fs, window=self._smooth_window)
        return x, fs

    def _build_analysis(self, fs: float) -> None:
        """Design the bandpass, smoother and spectral basis for rate *fs*."""
        t = self.thresholds
        self._design_fs = fs
        self._sos = build_bandpass(fs, t.spectral_low_hz, t.spectral_high_hz)
        self._smooth_window = savgol_window(fs)
        high = min(t.spectral_high_hz, 0.45 * fs)
        if high > t.spectral_low_hz:
            self._freqs = np.arange(
                t.spectral_low_hz, high + SPECTRAL_STEP_HZ / 2, SPECTRAL_STEP_HZ
            )
            self._basis = goertzel_basis(fs, self._freqs, self.max_points)
        else:
            self._freqs = np.array([])
            self._basis = None
        logger.debug("channel %d: analysis rate %.1f Hz", self.channel_id, fs)

    def _peak_bpm(self, x: np.ndarray, fs: float) -> Tuple[Optional[float], np.ndarray, int]:
        t = self.thresholds
        mean, std = float(np.mean(x)), float(np.std(x))
        distance = max(1, int(t.min_interval_ms / 1000.0 * fs))
        peaks, _ = find_peaks(
            x,
            height=mean + t.peak_height_k * std,
            prominence=t.peak_prominence_k * std,
            distance=distance,
        )
        if len(peaks) < 3:
            return None, np.array([]), len(peaks)

        refined = peaks + np.array([parabolic_offset(x, int(p)) for p in peaks])
        intervals = np.diff(refined) / fs * 1000.0
        valid = (intervals >= t.min_interval_ms) & (intervals <= t.max_interval_ms)
        # at least two consecutive valid intervals
        if not np.any(valid[:-1] & valid[1:]):
            return None, intervals[valid], len(peaks)
        good = intervals[valid]
        return 60000.0 / float(np.mean(good)), good, len(peaks)

    def _spectral_bpm(self, x: np.ndarray, fs: float) -> Tuple[Optional[float], float]:
        freqs = self._freqs
        if len(freqs) == 0:
            return None, 0.0
        power = goertzel_spectrum(x * np.hanning(len(x)), fs, freqs, basis=self._basis)
        if power.sum() <= 0:
            return None, 0.0

        k = int(np.argmax(power))
        peak_freq = freqs[k] + parabolic_offset(power, k) * SPECTRAL_STEP_HZ
        near = np.abs(freqs - freqs[k]) <= SNR_BAND_HZ
        signal_power = float(power[near].sum())
        noise_power = float(power[~near].sum())
        snr = 10.0 * math.log10(signal_power / max(noise_power, 1e-12 * signal_power, 1e-20))
        snr = float(np.clip(snr, -20.0, 30.0))
        return peak_freq * 60.0, snr

    def _damp(self, bpm: Optional[float]) -> Optional[float]:
        if bpm is None:
            return None
        t = self.thresholds
        last = self._last_bpm
        if last is not None and abs(bpm - last) > t.jump_threshold_bpm:
            logger.debug(
                "channel %d: damping jump %.1f -> %.1f", self.channel_id, last, bpm
            )
            bpm = last + t.jump_blend * (bpm - last)
        self._last_bpm = bpm
        return bpm

    def _quality(self, snr: float, intervals: np.ndarray, amplitude: float) -> float:
        t = self.thresholds
        snr_score = float(np.clip(snr / 12.0, 0.0, 1.0))
        regularity = 0.0
        if len(intervals) >= 2:
            cv = float(np.std(intervals) / np.mean(intervals))
            regularity = float(np.clip(1.0 - cv / 0.2, 0.0, 1.0))
        # full marks once the gained pulse spans twice the contact floor
        amplitude_score = float(np.clip(amplitude / (2.0 * t.min_range), 0.0, 1.0))
        return 100.0 * (0.5 * snr_score + 0.3 * regularity + 0.2 * amplitude_score)

    def _recent(self) -> Tuple[np.ndarray, np.ndarray]:
        """Raw and gained samples of the last ``CONTACT_WINDOW_MS``."""
        times = self._raw.times()
        if len(times) == 0:
            return np.array([]), np.array([])
        keep = times >= times[-1] - CONTACT_WINDOW_MS
        return self._raw.values()[keep], self._window.values()[keep]

    def _contact(self, raw: np.ndarray, gained: np.ndarray, intervals: np.ndarray) -> bool:
        t = self.thresholds
        if len(raw) < MIN_SAMPLES:
            return False

        mean = float(np.mean(raw))
        std = float(np.std(gained))
        peak_to_peak = float(np.ptp(gained))
        noise = 0.5 * float(np.median(np.abs(np.diff(gained))))
        contact = (
            t.min_brightness <= mean <= t.max_brightness
            and std > max(t.min_std, noise)
            and peak_to_peak > t.min_range
        )
        if contact and t.require_rhythm:
            contact = len(intervals) >= 2 and (
                float(np.std(intervals) / np.mean(intervals)) < 0.25
            )
        return contact
