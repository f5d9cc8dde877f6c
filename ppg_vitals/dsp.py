"""
Shared signal-processing primitives.

Narrowband power
----------------
The spectral BPM estimate only needs power at a few dozen frequencies in
0.5 – 4 Hz, which need not fall on FFT bins.  The Goertzel power at
frequency f equals the squared magnitude of

    X(f) = Σ x[n]·exp(−2πi·f·n/fs)

so all requested frequencies are evaluated at once as one matrix product
with a basis that callers can build once and reuse across frames.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
from scipy.ndimage import uniform_filter1d
from scipy.signal import butter, savgol_filter, sosfilt, sosfiltfilt

logger = logging.getLogger(__name__)


def resample_uniform(
    times_ms: np.ndarray, values: np.ndarray, n: int
) -> Tuple[np.ndarray, float]:
    """
    Linearly interpolate an irregularly sampled window onto *n* even points.

    Returns
    -------
    (signal, fs):
        Uniform signal and its sample rate in Hz.  ``fs`` is 0.0 when the
        window spans no time.
    """
    times_ms = np.asarray(times_ms, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64)
    if len(times_ms) < 2 or n < 2:
        return values.copy(), 0.0
    span_ms = float(times_ms[-1] - times_ms[0])
    if span_ms <= 0:
        return values.copy(), 0.0
    grid = np.linspace(times_ms[0], times_ms[-1], n)
    fs = (n - 1) / (span_ms / 1000.0)
    return np.interp(grid, times_ms, values), fs


def resample_at(
    times_ms: np.ndarray, values: np.ndarray, fs: float, max_points: int
) -> np.ndarray:
    """
    Interpolate onto a grid of rate *fs* that ends at the newest sample.

    At most *max_points* grid points are produced; older samples beyond that
    are left out.
    """
    times_ms = np.asarray(times_ms, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64)
    if len(times_ms) < 2 or fs <= 0:
        return values.copy()
    step_ms = 1000.0 / fs
    span_ms = float(times_ms[-1] - times_ms[0])
    n = min(max_points, int(span_ms / step_ms) + 1)
    grid = times_ms[-1] - step_ms * np.arange(n - 1, -1, -1)
    return np.interp(grid, times_ms, values)


def goertzel_basis(fs: float, freqs: np.ndarray, n: int) -> np.ndarray:
    """Complex exponentials for *freqs* over *n* samples, one row per frequency."""
    freqs = np.atleast_1d(np.asarray(freqs, dtype=np.float64))
    return np.exp(-2j * np.pi * np.outer(freqs, np.arange(n)) / fs)


def goertzel_spectrum(
    signal: np.ndarray,
    fs: float,
    freqs: np.ndarray,
    basis: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Power of *signal* at each frequency in *freqs* (Hz).

    *basis* may be a precomputed :func:`goertzel_basis` for the same
    ``fs`` and ``freqs`` with at least ``len(signal)`` columns.
    """
    x = np.asarray(signal, dtype=np.float64)
    freqs = np.atleast_1d(np.asarray(freqs, dtype=np.float64))
    if fs <= 0 or len(x) == 0:
        return np.zeros_like(freqs)
    if basis is None or basis.shape[1] < len(x):
        basis = goertzel_basis(fs, freqs, len(x))
    return np.abs(basis[:, : len(x)] @ x) ** 2


def goertzel_power(signal: np.ndarray, fs: float, freq: float) -> float:
    return float(goertzel_spectrum(signal, fs, np.array([freq]))[0])


def build_bandpass(fs: float, low_hz: float, high_hz: float, order: int = 2) -> np.ndarray:
    """Butterworth bandpass in second-order sections, edges clamped to (0, 1)."""
    nyq = fs / 2.0
    low = low_hz / nyq
    high = high_hz / nyq
    low = max(1e-4, min(low, 0.999))
    high = max(low + 1e-4, min(high, 0.999))
    return butter(order, [low, high], btype="bandpass", output="sos")


def bandpass(
    signal: np.ndarray,
    fs: float,
    low_hz: float = 0.5,
    high_hz: float = 4.0,
    order: int = 2,
    sos: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Band-limit *signal* to ``[low_hz, high_hz]``.

    Zero-phase (forward-backward) when the window is long enough for the
    filter's padding, causal otherwise.  Returns the input unchanged when
    ``fs`` is unknown.  Pass *sos* from :func:`build_bandpass` to skip the
    filter design.
    """
    x = np.asarray(signal, dtype=np.float64)
    if fs <= 0 or len(x) < 3:
        return x.copy()
    if sos is None:
        sos = build_bandpass(fs, low_hz, high_hz, order)
    padlen = 3 * (2 * len(sos) + 1)
    if len(x) > padlen:
        return sosfiltfilt(sos, x)
    return sosfilt(sos, x)


def savgol_window(fs: float, window_s: float = 0.15, polyorder: int = 2) -> int:
    """Odd Savitzky–Golay window length for *window_s* seconds at *fs*."""
    window = int(round(window_s * fs)) if fs > 0 else 5
    window = max(window, polyorder + 3)
    if window % 2 == 0:
        window += 1
    return window


def smooth(
    signal: np.ndarray,
    fs: float,
    window_s: float = 0.15,
    polyorder: int = 2,
    window: Optional[int] = None,
) -> np.ndarray:
    """Savitzky–Golay smoothing with an odd window sized from the sample rate."""
    x = np.asarray(signal, dtype=np.float64)
    if window is None:
        window = savgol_window(fs, window_s, polyorder)
    if len(x) < window:
        return x.copy()
    return savgol_filter(x, window, polyorder)


def moving_average(signal: np.ndarray, size: int) -> np.ndarray:
    x = np.asarray(signal, dtype=np.float64)
    if size <= 1 or len(x) == 0:
        return x.copy()
    return uniform_filter1d(x, size=min(size, len(x)), mode="nearest")


def parabolic_offset(values: np.ndarray, idx: int) -> float:
    """
    Sub-sample offset of a local maximum at *idx* from a three-point
    parabolic fit.  Returns 0.0 at the edges or on a flat top.
    """
    if idx <= 0 or idx >= len(values) - 1:
        return 0.0
    alpha = float(values[idx - 1])
    beta = float(values[idx])
    gamma = float(values[idx + 1])
    denom = alpha - 2.0 * beta + gamma
    if denom == 0:
        return 0.0
    p = 0.5 * (alpha - gamma) / denom
    return float(np.clip(p, -0.5, 0.5))


def iqr_filter(values: np.ndarray, k: float = 1.5) -> np.ndarray:
    """Boolean mask of values inside the Tukey fences."""
    x = np.asarray(values, dtype=np.float64)
    if len(x) < 4:
        return np.ones(len(x), dtype=bool)
    q1, q3 = np.percentile(x, [25, 75])
    iqr = q3 - q1
    return (x >= q1 - k * iqr) & (x <= q3 + k * iqr)
