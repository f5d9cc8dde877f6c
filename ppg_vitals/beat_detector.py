"""
Single-stream adaptive beat detector.

This is the authoritative source of RR intervals.  Each sample passes
through a median filter, a short moving average and an exponential
smoother; a much slower exponential baseline is subtracted and the result is
normalised by the local AC range.  A derivative above the adaptive threshold
arms the detector; the first non-rising sample after that marks a peak
candidate, which becomes a confirmed beat only after the timing, confidence,
amplitude and rhythm-consistency checks pass.

Listeners run on the analysis path and must return immediately.  Slow
feedback (audio, haptics) should be wrapped in a :class:`QueuedListener`
and consumed from its own thread.
"""

from __future__ import annotations

import logging
from collections import deque
from queue import Empty, Full, Queue
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

import numpy as np

from .buffers import TimeWindow
from .config import BeatDetectorConfig
from .types import BeatEvent, BeatResult, CalibrationProfile, DetectorState

logger = logging.getLogger(__name__)

BeatListener = Callable[[BeatEvent], None]

# Relative AC amplitude (range / baseline) a fingertip pulse plausibly has.
PLAUSIBLE_AC_RATIO = (0.0005, 0.25)


@dataclass(frozen=True)
class AdaptiveThresholds:
    signal: float
    confidence: float
    derivative: float


@dataclass(frozen=True)
class PeakStats:
    mean_height: float
    mean_confidence: float


def tune_thresholds(
    current: AdaptiveThresholds, stats: PeakStats, config: BeatDetectorConfig
) -> AdaptiveThresholds:
    """
    Move each threshold toward a target derived from recent peak statistics.

    Each step is limited to ``config.tune_max_step`` and the result is
    clipped to the configured bounds.
    """

    def step(value: float, target: float, bounds) -> float:
        delta = float(np.clip(target - value, -config.tune_max_step, config.tune_max_step))
        return float(np.clip(value + delta, *bounds))

    return AdaptiveThresholds(
        signal=step(current.signal, 0.5 * stats.mean_height, config.signal_threshold_bounds),
        confidence=step(
            current.confidence, 0.7 * stats.mean_confidence, config.confidence_threshold_bounds
        ),
        derivative=step(
            current.derivative, 0.002 * stats.mean_height, config.derivative_threshold_bounds
        ),
    )


class QueuedListener:
    """
    Beat listener that hands events to a bounded queue without waiting.

    The detector calls it on the analysis path; a feedback thread drains it
    with :meth:`get`.  When the consumer falls behind, new events are
    dropped and counted rather than blocking the frame.
    """

    def __init__(self, maxsize: int = 8) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._queue: "Queue[BeatEvent]" = Queue(maxsize=maxsize)
        self.dropped = 0

    def __call__(self, event: BeatEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except Full:
            self.dropped += 1
            logger.debug("beat feedback queue full; dropped %d events", self.dropped)

    def get(self, timeout: Optional[float] = None) -> Optional[BeatEvent]:
        """Next event, or ``None`` when none arrives within *timeout* seconds."""
        try:
            return self._queue.get(timeout=timeout)
        except Empty:
            return None

    def __len__(self) -> int:
        return self._queue.qsize()


class BeatDetector:
    """
    Adaptive peak detector emitting confirmed beats and RR intervals.

    Parameters
    ----------
    config:
        Detector tunables.
    on_beat:
        Optional listener called with a :class:`BeatEvent` for every
        confirmed beat.  It runs synchronously inside :meth:`process` and
        must return immediately; wrap slow feedback in a
        :class:`QueuedListener`.  Exceptions raised by the listener are
        logged and swallowed.
    """

    def __init__(
        self,
        config: BeatDetectorConfig | None = None,
        on_beat: Optional[BeatListener] = None,
    ) -> None:
        self.config = config or BeatDetectorConfig()
        self.on_beat = on_beat
        self._thresholds = self._default_thresholds()
        self._min_ac_range = self.config.weak_amplitude
        self._init_state()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def thresholds(self) -> AdaptiveThresholds:
        return self._thresholds

    @property
    def bpm(self) -> float:
        return self._smoothed_bpm

    @property
    def rr_intervals(self) -> List[float]:
        return list(self._rr)

    @property
    def last_beat_ms(self) -> Optional[float]:
        return self._last_beat_ms

    @property
    def beat_count(self) -> int:
        return self._beat_count

    def process(self, value: float, timestamp_ms: float) -> BeatResult:
        """Feed one sample and report the detector's view after it."""
        cfg = self.config
        if self._start_ms is None:
            self._start_ms = timestamp_ms
        if self._state is DetectorState.WARMUP and timestamp_ms - self._start_ms >= cfg.warmup_ms:
            self._state = DetectorState.ACTIVE
            logger.debug("beat detector active after %.0f ms", timestamp_ms - self._start_ms)

        ac = self._condition(value)
        self._ac_window.append(timestamp_ms, ac)
        ac_values = self._ac_window.values()
        ac_min = float(ac_values.min())
        ac_range = float(ac_values.max()) - ac_min
        norm = 2.0 * (ac - ac_min) / ac_range - 1.0 if ac_range > 1e-9 else 0.0

        if self._check_weak_signal(ac_range):
            self._rising = False
            self._prev_norm = norm
            self._prev_t = timestamp_ms
            return self._result(False, 0.0, ac)

        is_peak = False
        confidence = 0.0
        rr: Optional[float] = None
        if self._prev_norm is not None and self._prev_t is not None:
            derivative = norm - self._prev_norm
            if derivative > self._thresholds.derivative:
                self._rising = True
            elif derivative <= 0 and self._rising:
                # first non-rising sample after an upstroke; the crest is the previous one
                self._rising = False
                confidence = self._confidence(self._prev_norm, ac_range)
                is_peak, rr = self._confirm(self._prev_t, self._prev_norm, confidence, ac_range)
                if is_peak:
                    self._valley = self._prev_norm
        self._valley = min(self._valley, norm)
        self._prev_norm = norm
        self._prev_t = timestamp_ms
        return self._result(is_peak, confidence, ac, rr)

    def apply_profile(self, profile: CalibrationProfile) -> None:
        """Raise the amplitude floor to what the calibrated pulse supports."""
        self._min_ac_range = max(self.config.weak_amplitude, 0.5 * profile.peak_threshold)

    def reset(self) -> None:
        """Clear buffers and beat state; adaptive thresholds are kept."""
        self._init_state()

    def full_reset(self) -> None:
        """:meth:`reset` and restore default thresholds and amplitude floor."""
        self._init_state()
        self._thresholds = self._default_thresholds()
        self._min_ac_range = self.config.weak_amplitude

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _default_thresholds(self) -> AdaptiveThresholds:
        return AdaptiveThresholds(
            signal=self.config.signal_threshold,
            confidence=self.config.confidence_threshold,
            derivative=self.config.derivative_threshold,
        )

    def _init_state(self) -> None:
        cfg = self.config
        self._state = DetectorState.WARMUP
        self._start_ms: Optional[float] = None
        self._median_buf: Deque[float] = deque(maxlen=cfg.median_size)
        self._ma_buf: Deque[float] = deque(maxlen=cfg.moving_average_size)
        self._smoothed: Optional[float] = None
        self._baseline: Optional[float] = None
        self._ac_window = TimeWindow(cfg.ac_window_ms, 512)
        self._prev_norm: Optional[float] = None
        self._prev_t: Optional[float] = None
        self._rising = False
        self._valley = 0.0
        self._reset_beats()

    def _reset_beats(self) -> None:
        cfg = self.config
        self._last_beat_ms: Optional[float] = None
        self._rr: Deque[float] = deque(maxlen=cfg.rr_history)
        self._bpm_history: Deque[float] = deque(maxlen=cfg.bpm_history)
        self._smoothed_bpm = 0.0
        self._rejections = 0
        self._weak_run = 0
        self._beat_count = 0
        self._recent_peaks: Deque[tuple] = deque(maxlen=10)

    def _condition(self, value: float) -> float:
        cfg = self.config
        self._median_buf.append(value)
        self._ma_buf.append(float(np.median(self._median_buf)))
        ma = float(np.mean(self._ma_buf))
        if self._smoothed is None:
            self._smoothed = ma
            self._baseline = ma
        else:
            self._smoothed = cfg.ema_alpha * ma + (1.0 - cfg.ema_alpha) * self._smoothed
            self._baseline = (
                cfg.baseline_alpha * self._smoothed + (1.0 - cfg.baseline_alpha) * self._baseline
            )
        return self._smoothed - self._baseline

    def _check_weak_signal(self, ac_range: float) -> bool:
        if ac_range >= self._min_ac_range:
            self._weak_run = 0
            return False
        self._weak_run += 1
        if self._weak_run >= self.config.weak_frames:
            if self._last_beat_ms is not None or self._rr:
                logger.info("beat detector auto-reset after %d weak frames", self._weak_run)
            self._reset_beats()
        return True

    def _confidence(self, height: float, ac_range: float) -> float:
        relative_height = float(np.clip((height + 1.0) / 2.0, 0.0, 1.0))
        upstroke = float(np.clip((height - self._valley) / 1.5, 0.0, 1.0))
        baseline = abs(self._baseline or 0.0)
        ratio = ac_range / baseline if baseline > 0 else 0.0
        lo, hi = PLAUSIBLE_AC_RATIO
        plausible = 1.0 if lo <= ratio <= hi else 0.3
        return 0.5 * relative_height + 0.3 * upstroke + 0.2 * plausible

    def _confirm(self, t_peak: float, height: float, confidence: float,
                 ac_range: float) -> tuple:
        cfg = self.config
        th = self._thresholds
        if self._state is not DetectorState.ACTIVE:
            return False, None
        if self._last_beat_ms is not None and t_peak - self._last_beat_ms < cfg.min_interval_ms:
            return False, None
        if confidence < th.confidence or height < th.signal or ac_range < self._min_ac_range:
            return False, None

        rr: Optional[float] = None
        if self._last_beat_ms is not None:
            rr = t_peak - self._last_beat_ms
            if rr > cfg.max_interval_ms:
                rr = None
            elif len(self._rr) >= 3 and confidence < cfg.high_confidence:
                expected = float(np.median(list(self._rr)[-5:]))
                if abs(rr - expected) / expected > cfg.rr_tolerance:
                    self._rejections += 1
                    if self._rejections >= cfg.resync_after:
                        logger.debug("beat detector resync after %d rejections", self._rejections)
                        self._rr.clear()
                        self._last_beat_ms = t_peak
                        self._rejections = 0
                    return False, None

        self._rejections = 0
        self._last_beat_ms = t_peak
        self._beat_count += 1
        self._recent_peaks.append((height, confidence))
        if rr is not None:
            self._rr.append(rr)
            self._bpm_history.append(60000.0 / rr)
            median_bpm = float(np.median(list(self._bpm_history)[-cfg.bpm_median_n:]))
            if self._smoothed_bpm == 0.0:
                self._smoothed_bpm = median_bpm
            else:
                self._smoothed_bpm = (
                    cfg.bpm_ema_alpha * median_bpm + (1.0 - cfg.bpm_ema_alpha) * self._smoothed_bpm
                )

        if self._beat_count % cfg.tune_every_beats == 0:
            heights, confidences = zip(*self._recent_peaks)
            self._thresholds = tune_thresholds(
                self._thresholds,
                PeakStats(float(np.mean(heights)), float(np.mean(confidences))),
                cfg,
            )

        self._notify(BeatEvent(t_peak, self._smoothed_bpm, confidence, rr))
        return True, rr

    def _notify(self, event: BeatEvent) -> None:
        if self.on_beat is None:
            return
        try:
            self.on_beat(event)
        except Exception as exc:                         # noqa: BLE001
            logger.warning("beat listener raised %s: %s", type(exc).__name__, exc)

    def _result(self, is_peak: bool, confidence: float, ac: float,
                rr: Optional[float] = None) -> BeatResult:
        return BeatResult(
            bpm=self._smoothed_bpm,
            confidence=confidence,
            is_peak=is_peak,
            filtered_value=ac,
            state=self._state,
            rr_interval_ms=rr,
        )
