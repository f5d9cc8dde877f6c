"""
Per-session orchestration.

A :class:`VitalsSession` owns exactly one instance of every stage and wires
them together in the order the data flows:

    RawSample ─► CalibrationLearner (first seconds only)
              ─► ConsensusManager ─► finger present / aggregated BPM
              ─► BeatDetector     ─► RR intervals ─► RhythmAnalyzer
              ─► QualityAnalyzer
              ─► FeatureExtractor ─► VitalEstimator (every vitals tick)

The red channel carries the pulse; green is only used for the ratio of
ratios behind SpO2.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .beat_detector import BeatDetector, BeatListener
from .buffers import TimeWindow
from .calibration import CalibrationLearner
from .config import (
    BeatDetectorConfig,
    CalibrationConfig,
    DetectionThresholds,
    QualityConfig,
    RhythmConfig,
    SessionConfig,
    VitalLimits,
)
from .consensus import ConsensusManager
from .dsp import resample_uniform
from .features import extract_features, perfusion_ratio
from .quality import QualityAnalyzer
from .rhythm import RhythmAnalyzer
from .types import (
    ArrhythmiaClassification,
    CalibrationProfile,
    CalibrationState,
    ConsensusResult,
    FrameResult,
    RawSample,
    VitalSignsResult,
)
from .vitals import VitalEstimator

logger = logging.getLogger(__name__)


class VitalsSession:
    """
    One measurement session.

    Parameters
    ----------
    config:
        Session-level options (channel count, vitals tick, calibration).
    thresholds:
        Base detection thresholds; a completed calibration derives a tuned
        copy from them.
    on_beat:
        Listener for confirmed beats (audio/haptic feedback).
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        thresholds: DetectionThresholds | None = None,
        beat_config: BeatDetectorConfig | None = None,
        quality_config: QualityConfig | None = None,
        calibration_config: CalibrationConfig | None = None,
        vital_limits: VitalLimits | None = None,
        rhythm_config: RhythmConfig | None = None,
        on_beat: Optional[BeatListener] = None,
    ) -> None:
        self.config = config or SessionConfig()
        self._base_thresholds = thresholds or DetectionThresholds()

        self.consensus = ConsensusManager(self.config.n_channels, self._base_thresholds)
        self.beats = BeatDetector(beat_config, on_beat)
        self.quality = QualityAnalyzer(quality_config)
        self.calibration = CalibrationLearner(calibration_config)
        self.vitals = VitalEstimator(vital_limits)
        self.rhythm = RhythmAnalyzer(rhythm_config)

        self._red = TimeWindow(self.config.feature_window_ms, 1024)
        self._green = TimeWindow(self.config.feature_window_ms, 1024)
        self._clear_transient()
        if self.config.calibrate:
            self.calibration.start()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def calibration_state(self) -> CalibrationState:
        return self.calibration.state

    @property
    def profile(self) -> Optional[CalibrationProfile]:
        return self.calibration.profile

    @property
    def last_vitals(self) -> VitalSignsResult:
        return self._last_vitals

    @property
    def last_rhythm(self) -> ArrhythmiaClassification:
        return self.rhythm.last

    def process_frame(self, sample: RawSample) -> FrameResult:
        """Run every stage on one frame's colour statistics."""
        t = sample.timestamp_ms
        self._feed_calibration(sample)

        coverage = sample.coverage_ratio
        bounds = self.consensus.thresholds.rg_ratio_bounds
        if bounds is not None and not (bounds[0] <= sample.rg_ratio <= bounds[1]):
            coverage = 0.0

        self.consensus.push_sample(sample.red_mean, t)
        consensus = self.consensus.analyze_all(coverage, sample.frame_diff)

        if self._finger_was_present and not consensus.finger_detected:
            self.beats.reset()
            self.quality.reset()
        self._finger_was_present = consensus.finger_detected

        beat = self.beats.process(sample.red_mean, t)
        self.quality.push(sample.red_mean, beat.filtered_value, t)
        quality = self.quality.analyze()
        self._red.append(t, sample.red_mean)
        self._green.append(t, sample.green_mean)

        rhythm = None
        if beat.is_peak and consensus.finger_detected:
            rhythm = self.rhythm.update(self.beats.rr_intervals, t)

        vitals = None
        if self._last_tick_ms is None or t - self._last_tick_ms >= self.config.vitals_interval_ms:
            vitals = self._tick(t, consensus)
            self._last_tick_ms = t

        return FrameResult(
            consensus=consensus,
            beat=beat,
            quality=quality,
            calibration_state=self.calibration.state,
            vitals=vitals,
            rhythm=rhythm,
        )

    def state_summary(self) -> Dict[str, object]:
        """Observable state of every stage, for diagnostics and logging."""
        return {
            "consensus": self.consensus.stats(),
            "rr_intervals": self.beats.rr_intervals,
            "beat_state": self.beats.state,
            "bpm": self.beats.bpm,
            "thresholds": self.consensus.thresholds,
            "calibration": self.calibration.state,
            "arrhythmia_count": self.rhythm.arrhythmia_count,
            "gate_open": self.vitals.gate_open,
            "vitals": self._last_vitals,
        }

    def reset(self) -> None:
        """Clear transient buffers; calibration and adaptive gains survive."""
        self.consensus.reset()
        self.beats.reset()
        self.quality.reset()
        self.vitals.reset()
        self.rhythm.reset()
        self._clear_transient()

    def full_reset(self) -> None:
        """:meth:`reset`, discard the profile and adaptive state, recalibrate."""
        self.consensus.full_reset()
        self.consensus.apply_thresholds(self._base_thresholds)
        self.beats.full_reset()
        self.quality.full_reset()
        self.vitals.full_reset()
        self.rhythm.reset()
        self.calibration.reset()
        self._clear_transient()
        if self.config.calibrate:
            self.calibration.start()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _clear_transient(self) -> None:
        self._red.clear()
        self._green.clear()
        self._last_tick_ms: Optional[float] = None
        self._last_vitals = VitalSignsResult()
        self._finger_was_present = False

    def _feed_calibration(self, sample: RawSample) -> None:
        if self.calibration.state is not CalibrationState.COLLECTING:
            return
        state = self.calibration.add_sample(sample)
        if state is CalibrationState.COMPLETE and self.calibration.profile is not None:
            self._apply_profile(self.calibration.profile)

    def _apply_profile(self, profile: CalibrationProfile) -> None:
        thresholds = DetectionThresholds.from_profile(profile, self._base_thresholds)
        self.consensus.apply_thresholds(thresholds)
        self.beats.apply_profile(profile)
        self.quality.apply_profile(profile)
        logger.info(
            "Profile applied – min_brightness=%.1f min_range=%.2f rg_bounds=(%.2f, %.2f)",
            thresholds.min_brightness,
            thresholds.min_range,
            *profile.rg_ratio_bounds,
        )

    def _tick(self, now_ms: float, consensus: ConsensusResult) -> VitalSignsResult:
        rr = self.beats.rr_intervals if consensus.finger_detected else []

        red, fs = resample_uniform(self._red.times(), self._red.values(), len(self._red))
        green, _ = resample_uniform(self._green.times(), self._green.values(), len(self._green))
        features = extract_features(red, fs, rr)

        result = self.vitals.process(
            features,
            heart_rate=self.beats.bpm,
            rr_intervals=rr,
            now_ms=now_ms,
            last_beat_ms=self.beats.last_beat_ms,
            red_ratio=perfusion_ratio(red, fs),
            green_ratio=perfusion_ratio(green, fs),
            arrhythmia_count=self.rhythm.arrhythmia_count,
            arrhythmia_status=self.rhythm.status,
            is_calibrating=self.calibration.is_calibrating,
            calibration_progress=self.calibration.progress if self.calibration.is_calibrating else 0.0,
        )
        self._last_vitals = result
        return result
