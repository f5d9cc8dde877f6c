"""End-to-end tests for the measurement session."""

from __future__ import annotations

import numpy as np
import pytest

from ppg_vitals import RawSample, VitalsSession
from ppg_vitals.config import SessionConfig
from ppg_vitals.types import CalibrationState

FPS = 30.0


def _finger_samples(seconds: float, bpm: float = 72.0, t0_ms: float = 0.0, fps: float = FPS):
    n = int(seconds * fps)
    for i in range(n):
        t = t0_ms + i * 1000.0 / fps
        p = np.sin(2 * np.pi * (bpm / 60.0) * t / 1000.0)
        yield RawSample(
            timestamp_ms=t,
            red_mean=150.0 + 3.0 * float(p),
            green_mean=60.0 + 1.0 * float(p),
            blue_mean=40.0,
            brightness_mean=80.0,
            frame_diff=0.5,
            coverage_ratio=0.95,
        )


def _dark_samples(seconds: float):
    for i in range(int(seconds * FPS)):
        yield RawSample(timestamp_ms=i * 1000.0 / FPS, red_mean=2.0, green_mean=1.0,
                        blue_mean=1.0, coverage_ratio=0.0)


class TestVitalsSession:

    def test_steady_finger_produces_validated_vitals(self):
        session = VitalsSession(SessionConfig(n_channels=3))
        validated = []
        for sample in _finger_samples(25.0):
            result = session.process_frame(sample)
            if result.vitals is not None and result.vitals.pulse_validated:
                validated.append(result.vitals)

        assert session.calibration_state is CalibrationState.COMPLETE
        assert session.profile is not None
        assert result.consensus.finger_detected is True
        assert abs(session.beats.bpm - 72.0) <= 0.05 * 72.0
        assert validated, "pulse gate never opened"
        last = validated[-1]
        assert 70.0 <= last.spo2 <= 100.0
        pulse_pressure = last.pressure.systolic - last.pressure.diastolic
        assert 25.0 - 1e-6 <= pulse_pressure <= 80.0 + 1e-6
        assert last.is_calibrating is False

    @pytest.mark.parametrize("fps", [30.0, 60.0])
    @pytest.mark.parametrize("bpm", [50.0, 72.0, 110.0])
    def test_gate_stays_open_for_the_whole_recording(self, bpm, fps):
        session = VitalsSession(SessionConfig(n_channels=3))
        ticks = []
        for sample in _finger_samples(25.0, bpm=bpm, fps=fps):
            result = session.process_frame(sample)
            if result.vitals is not None and sample.timestamp_ms >= 15000.0:
                ticks.append(result.vitals)

        t_end = 25000.0 - 1000.0 / fps
        assert ticks
        assert all(v.pulse_validated for v in ticks), [v.invalid_reason for v in ticks]
        assert session.beats.last_beat_ms > t_end - 2.0 * 60000.0 / bpm - 500.0
        assert abs(session.beats.bpm - bpm) <= 0.05 * bpm

    def test_calibration_reported_while_collecting(self):
        session = VitalsSession(SessionConfig(n_channels=2))
        ticks = [r.vitals for r in map(session.process_frame, _finger_samples(2.0))
                 if r.vitals is not None]
        assert ticks
        assert all(v.is_calibrating for v in ticks)
        assert 0.0 < ticks[-1].calibration_progress < 1.0

    def test_no_finger_keeps_exact_zeros(self):
        session = VitalsSession(SessionConfig(n_channels=3))
        for sample in _dark_samples(10.0):
            result = session.process_frame(sample)
            assert result.consensus.finger_detected is False
            if result.vitals is not None:
                assert result.vitals.is_zero()
                assert result.vitals.pulse_validated is False
        assert session.calibration_state is CalibrationState.FAILED

    def test_reset_is_idempotent(self):
        session = VitalsSession(SessionConfig(n_channels=2))
        for sample in _finger_samples(6.0):
            session.process_frame(sample)
        session.reset()
        once = session.state_summary()
        session.reset()
        assert session.state_summary() == once
        assert once["rr_intervals"] == []
        assert once["vitals"].is_zero()

    def test_full_reset_restarts_calibration(self):
        session = VitalsSession(SessionConfig(n_channels=2))
        for sample in _finger_samples(6.0):
            session.process_frame(sample)
        assert session.calibration_state is CalibrationState.COMPLETE
        session.full_reset()
        assert session.calibration_state is CalibrationState.COLLECTING
        assert session.profile is None
        assert session.consensus.thresholds.rg_ratio_bounds is None

    def test_beat_listener_is_called(self):
        beats = []
        session = VitalsSession(SessionConfig(n_channels=2, calibrate=False),
                                on_beat=beats.append)
        for sample in _finger_samples(8.0):
            session.process_frame(sample)
        assert session.calibration_state is CalibrationState.IDLE
        assert len(beats) >= 5
