"""
Pulse-morphology features.

Every function here is pure: it takes a uniformly sampled window (and its
sample rate) or an RR list and returns a number.  Insufficient or degenerate
input yields 0.0 instead of an exception, so callers can feed whatever
window they currently hold.
"""

from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np
from scipy.signal import find_peaks

from .config import MAX_RR_MS, MIN_RR_MS
from .dsp import bandpass
from .types import PulseFeatures

AC_DC_SAMPLES = 30
TEMPLATE_POINTS = 100
REFERENCE_HEIGHT_M = 1.7


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _as_array(signal: Sequence[float]) -> np.ndarray:
    return np.asarray(signal, dtype=np.float64)


def _peaks(x: np.ndarray, fs: float) -> np.ndarray:
    std = float(np.std(x))
    if std <= 1e-12 or fs <= 0:
        return np.array([], dtype=int)
    distance = max(1, int(MIN_RR_MS / 1000.0 * fs))
    peaks, _ = find_peaks(x - x.mean(), prominence=0.3 * std, distance=distance)
    return peaks


def _preceding_valleys(x: np.ndarray, peaks: np.ndarray) -> list:
    """(valley_idx, peak_idx) pairs, valley being the minimum since the previous peak."""
    pairs = []
    for prev, peak in zip(peaks[:-1], peaks[1:]):
        valley = prev + int(np.argmin(x[prev:peak + 1]))
        pairs.append((valley, int(peak)))
    return pairs


def valid_rr(rr_intervals: Sequence[float]) -> np.ndarray:
    """Finite RR intervals inside the physiological domain, in order."""
    rr = _as_array(rr_intervals)
    return rr[np.isfinite(rr) & (rr >= MIN_RR_MS) & (rr <= MAX_RR_MS)]


# ---------------------------------------------------------------------------
# Amplitude features
# ---------------------------------------------------------------------------

def ac_dc_ratio(signal: Sequence[float], n_last: int = AC_DC_SAMPLES) -> float:
    """Peak-to-peak over mean of the newest *n_last* samples."""
    x = _as_array(signal)[-n_last:]
    if len(x) < 4:
        return 0.0
    dc = float(np.mean(x))
    if dc <= 0:
        return 0.0
    return float(np.ptp(x)) / dc


def perfusion_ratio(signal: Sequence[float], fs: float) -> float:
    """RMS of the 0.5 – 4 Hz component over the mean level."""
    x = _as_array(signal)
    if len(x) < 16 or fs <= 0:
        return 0.0
    dc = float(np.mean(x))
    if dc <= 0:
        return 0.0
    ac = bandpass(x - dc, fs)
    return float(np.sqrt(np.mean(ac ** 2))) / dc


def amplitude_variability(signal: Sequence[float], fs: float) -> float:
    """Coefficient of variation of valley-to-peak amplitudes."""
    x = _as_array(signal)
    pairs = _preceding_valleys(x, _peaks(x, fs))
    if len(pairs) < 2:
        return 0.0
    amplitudes = np.array([x[p] - x[v] for v, p in pairs])
    mean = float(np.mean(amplitudes))
    return float(np.std(amplitudes)) / mean if mean > 0 else 0.0


# ---------------------------------------------------------------------------
# Timing features
# ---------------------------------------------------------------------------

def pulse_width_ms(signal: Sequence[float], fs: float) -> float:
    """Mean duration of complete excursions above the window mean."""
    x = _as_array(signal)
    if len(x) < 4 or fs <= 0:
        return 0.0
    above = (x > x.mean()).astype(np.int8)
    edges = np.diff(above)
    starts = np.flatnonzero(edges == 1) + 1
    ends = np.flatnonzero(edges == -1) + 1
    if len(starts) == 0 or len(ends) == 0:
        return 0.0
    ends = ends[ends > starts[0]]
    n = min(len(starts), len(ends))
    if n == 0:
        return 0.0
    widths = ends[:n] - starts[:n]
    return float(np.mean(widths)) / fs * 1000.0


def systolic_time_ms(signal: Sequence[float], fs: float) -> float:
    """Mean rise time from the preceding valley to each systolic peak."""
    x = _as_array(signal)
    pairs = _preceding_valleys(x, _peaks(x, fs))
    if not pairs:
        return 0.0
    rises = [p - v for v, p in pairs if p > v]
    if not rises:
        return 0.0
    return float(np.mean(rises)) / fs * 1000.0


def dicrotic_notch_depth(signal: Sequence[float], fs: float) -> float:
    """
    Mean ``(P1 − P2) / amplitude`` over beats that show a secondary peak.

    P1 is the systolic peak, P2 the highest local maximum in the first 60 %
    of the following interval and amplitude the P1-to-valley drop.
    """
    x = _as_array(signal)
    peaks = _peaks(x, fs)
    depths = []
    for p1, nxt in zip(peaks[:-1], peaks[1:]):
        segment = x[p1 + 1:nxt]
        if len(segment) < 3:
            continue
        amplitude = float(x[p1] - segment.min())
        if amplitude <= 0:
            continue
        early = segment[: max(3, int(0.6 * len(segment)))]
        secondary, _ = find_peaks(early)
        if len(secondary) == 0:
            continue
        p2 = float(early[secondary].max())
        depths.append((float(x[p1]) - p2) / amplitude)
    return float(np.mean(depths)) if depths else 0.0


# ---------------------------------------------------------------------------
# Second-derivative features
# ---------------------------------------------------------------------------

def ensemble_beat(signal: Sequence[float], fs: float) -> Tuple[np.ndarray, float]:
    """
    Average onset-to-onset beat resampled to a fixed number of points.

    Returns ``(template, beat_seconds)``; an empty template when fewer than
    two complete beats are present.
    """
    x = _as_array(signal)
    # the lowest point between systolic peaks, so a deep notch is never an onset
    onsets = np.array([v for v, _ in _preceding_valleys(x, _peaks(x, fs))], dtype=int)
    if len(onsets) < 3:
        return np.array([]), 0.0
    grid = np.linspace(0.0, 1.0, TEMPLATE_POINTS)
    beats = []
    for a, b in zip(onsets[:-1], onsets[1:]):
        segment = x[a:b + 1]
        if len(segment) < 4:
            continue
        local = np.linspace(0.0, 1.0, len(segment))
        beats.append(np.interp(grid, local, segment - segment[0]))
    if len(beats) < 2:
        return np.array([]), 0.0
    beat_seconds = float(np.mean(np.diff(onsets))) / fs
    return np.mean(beats, axis=0), beat_seconds


def acceleration_features(signal: Sequence[float], fs: float) -> Tuple[float, float]:
    """
    Augmentation and stiffness indices from the ensemble-averaged beat.

    The diastolic point is the first local maximum of the second derivative
    (the APG "e" wave) after the systolic peak.  Augmentation index is the
    diastolic-to-systolic height ratio and stiffness index is a reference
    body height over the systolic-to-diastolic delay.
    """
    template, beat_seconds = ensemble_beat(signal, fs)
    if len(template) == 0 or beat_seconds <= 0:
        return 0.0, 0.0
    systolic = int(np.argmax(template))
    height = float(template[systolic] - template[0])
    if height <= 0:
        return 0.0, 0.0

    apg = np.gradient(np.gradient(template))
    stop = int(0.9 * TEMPLATE_POINTS)
    if stop - systolic < 3:
        return 0.0, 0.0
    e_waves, _ = find_peaks(apg[systolic + 1:stop])
    if len(e_waves) == 0:
        return 0.0, 0.0
    diastolic = systolic + 1 + int(e_waves[0])
    delay_s = (diastolic - systolic) / (TEMPLATE_POINTS - 1) * beat_seconds
    augmentation = float(template[diastolic] - template[0]) / height
    stiffness = REFERENCE_HEIGHT_M / delay_s if delay_s > 0 else 0.0
    return float(np.clip(augmentation, 0.0, 1.0)), float(stiffness)


# ---------------------------------------------------------------------------
# RR statistics
# ---------------------------------------------------------------------------

def rr_variability(rr_intervals: Sequence[float]) -> Tuple[float, float, float]:
    """``(sdnn, rmssd, cv)`` over the valid intervals; zeros below three."""
    rr = valid_rr(rr_intervals)
    if len(rr) < 3:
        return 0.0, 0.0, 0.0
    mean = float(np.mean(rr))
    sdnn = float(np.std(rr, ddof=1))
    rmssd = float(np.sqrt(np.mean(np.diff(rr) ** 2)))
    return sdnn, rmssd, sdnn / mean


def extract_features(
    signal: Sequence[float], fs: float, rr_intervals: Sequence[float] = ()
) -> PulseFeatures:
    """Compute every feature for one window."""
    augmentation, stiffness = acceleration_features(signal, fs)
    sdnn, rmssd, cv = rr_variability(rr_intervals)
    return PulseFeatures(
        ac_dc_ratio=ac_dc_ratio(signal),
        perfusion_ratio=perfusion_ratio(signal, fs),
        pulse_width_ms=pulse_width_ms(signal, fs),
        dicrotic_depth=dicrotic_notch_depth(signal, fs),
        systolic_time_ms=systolic_time_ms(signal, fs),
        amplitude_variability=amplitude_variability(signal, fs),
        augmentation_index=augmentation,
        stiffness_index=stiffness,
        sdnn=sdnn,
        rmssd=rmssd,
        rr_cv=cv,
    )
