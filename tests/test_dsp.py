"""Tests for the shared DSP helpers and the time window."""

from __future__ import annotations

import numpy as np
import pytest

from ppg_vitals.buffers import TimeWindow
from ppg_vitals.dsp import (
    bandpass,
    goertzel_basis,
    goertzel_power,
    goertzel_spectrum,
    iqr_filter,
    parabolic_offset,
    resample_at,
    resample_uniform,
    smooth,
)


class TestGoertzel:

    def test_peak_at_signal_frequency(self):
        fs = 30.0
        t = np.arange(256) / fs
        x = np.sin(2 * np.pi * 1.2 * t)
        freqs = np.arange(0.5, 4.0, 0.05)
        power = goertzel_spectrum(x, fs, freqs)
        assert freqs[int(np.argmax(power))] == pytest.approx(1.2, abs=1e-6)

    def test_single_frequency_matches_spectrum(self):
        fs = 25.0
        x = np.cos(2 * np.pi * 2.0 * np.arange(100) / fs)
        spectrum = goertzel_spectrum(x, fs, np.array([1.0, 2.0]))
        assert goertzel_power(x, fs, 2.0) == pytest.approx(spectrum[1])
        assert spectrum[1] > 10 * spectrum[0]

    def test_matches_the_goertzel_recurrence(self):
        fs = 30.0
        x = np.random.default_rng(5).normal(size=200)
        freqs = np.array([0.7, 1.23, 2.5])
        expected = []
        for f in freqs:
            coeff = 2.0 * np.cos(2.0 * np.pi * f / fs)
            s1 = s2 = 0.0
            for sample in x:
                s1, s2 = sample + coeff * s1 - s2, s1
            expected.append(s1 * s1 + s2 * s2 - coeff * s1 * s2)
        np.testing.assert_allclose(goertzel_spectrum(x, fs, freqs), expected, rtol=1e-7)

    def test_precomputed_basis_is_reused(self):
        fs = 30.0
        freqs = np.arange(0.5, 4.0, 0.05)
        basis = goertzel_basis(fs, freqs, 256)
        x = np.sin(2 * np.pi * 1.5 * np.arange(180) / fs)
        np.testing.assert_allclose(
            goertzel_spectrum(x, fs, freqs, basis=basis), goertzel_spectrum(x, fs, freqs)
        )

    def test_empty_or_unknown_rate_is_zero(self):
        assert goertzel_spectrum(np.array([]), 30.0, np.array([1.0]))[0] == 0.0
        assert goertzel_power(np.ones(10), 0.0, 1.0) == 0.0


class TestResampling:

    def test_irregular_to_uniform(self):
        times = np.array([0.0, 10.0, 30.0, 60.0])
        values = 2.0 * times
        uniform, fs = resample_uniform(times, values, 4)
        np.testing.assert_allclose(uniform, [0.0, 40.0, 80.0, 120.0])
        assert fs == pytest.approx(50.0)

    def test_fixed_rate_grid_ends_at_newest_sample(self):
        times = np.arange(0.0, 1001.0, 20.0)
        values = times / 10.0
        uniform = resample_at(times, values, 10.0, 256)
        np.testing.assert_allclose(uniform, np.arange(0.0, 101.0, 10.0))
        np.testing.assert_allclose(resample_at(times, values, 10.0, 4), [70.0, 80.0, 90.0, 100.0])

    def test_single_sample_has_no_rate(self):
        uniform, fs = resample_uniform(np.array([5.0]), np.array([1.0]), 8)
        assert fs == 0.0
        assert len(uniform) == 1


class TestFilters:

    def test_bandpass_removes_dc(self):
        fs = 30.0
        t = np.arange(300) / fs
        x = 100.0 + np.sin(2 * np.pi * 1.2 * t)
        y = bandpass(x, fs)
        assert abs(float(np.mean(y[50:-50]))) < 0.5
        assert float(np.std(y[50:-50])) > 0.4

    def test_smooth_preserves_length(self):
        x = np.random.default_rng(0).normal(size=100)
        assert len(smooth(x, 30.0)) == 100

    def test_smooth_short_signal_passthrough(self):
        x = np.array([1.0, 2.0, 3.0])
        np.testing.assert_array_equal(smooth(x, 30.0), x)

    def test_parabolic_offset(self):
        assert parabolic_offset(np.array([1.0, 3.0, 2.0]), 1) == pytest.approx(1.0 / 6.0)
        assert parabolic_offset(np.array([1.0, 3.0, 2.0]), 0) == 0.0
        assert parabolic_offset(np.array([2.0, 2.0, 2.0]), 1) == 0.0

    def test_iqr_filter_drops_outlier(self):
        mask = iqr_filter(np.array([70.0, 71.0, 72.0, 73.0, 150.0]))
        assert mask.tolist() == [True, True, True, True, False]

    def test_iqr_filter_keeps_small_sets(self):
        assert iqr_filter(np.array([10.0, 200.0])).all()


class TestTimeWindow:

    def test_evicts_by_time(self):
        w = TimeWindow(1000.0)
        for i in range(30):
            w.append(i * 100.0, float(i))
        assert w.times()[0] >= 2900.0 - 1000.0
        assert w.span_ms <= 1000.0

    def test_sample_cap(self):
        w = TimeWindow(1e9, max_samples=10)
        for i in range(50):
            w.append(float(i), float(i))
        assert len(w) == 10
        assert w.values()[-1] == 49.0

    def test_backward_clock_clears(self):
        w = TimeWindow(1000.0)
        w.append(500.0, 1.0)
        w.append(600.0, 2.0)
        w.append(100.0, 3.0)
        assert len(w) == 1
        assert w.latest(5).tolist() == [3.0]

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            TimeWindow(0.0)
