"""
Multi-channel consensus.

Several :class:`ChannelFilter` instances see the same raw signal through
slightly different gains.  Each frame their contact flags are voted into a
debounced finger-present state, their BPM estimates are fused with an
outlier-filtered quality-weighted mean, and a small rate-limited controller
nudges each channel's gain.

The debounce and the gain controller are pure functions over explicit state
so they can be exercised without any signal at all.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Tuple

import numpy as np

from .channel_filter import ChannelFilter
from .config import DetectionThresholds
from .dsp import iqr_filter
from .types import ChannelEstimate, ConsensusResult

logger = logging.getLogger(__name__)

GAIN_SPREAD = 0.08
STABLE_BPM_STD = 3.0


@dataclass(frozen=True)
class DebounceState:
    detected: bool = False
    positive_run: int = 0
    negative_run: int = 0


def debounce_step(
    state: DebounceState, positive: bool, confirm_frames: int, release_frames: int
) -> DebounceState:
    """
    Advance the finger-present debounce by one frame.

    Detection flips on after *confirm_frames* consecutive positive frames
    and off after *release_frames* consecutive negative frames.  Any frame of
    the opposite polarity restarts the run.
    """
    if positive:
        run = state.positive_run + 1
        return DebounceState(
            detected=state.detected or run >= confirm_frames,
            positive_run=run,
            negative_run=0,
        )
    run = state.negative_run + 1
    return DebounceState(
        detected=state.detected and run < release_frames,
        positive_run=0,
        negative_run=run,
    )


def gain_feedback(
    estimate: ChannelEstimate, cooldown: int, thresholds: DetectionThresholds
) -> Tuple[float, int]:
    """
    One step of the per-channel gain controller.

    Returns ``(delta, cooldown)``; *delta* is the relative gain change to
    apply (0.0 for none).  After a nudge the channel is left alone for
    ``gain_cooldown_frames`` frames.
    """
    if cooldown > 0:
        return 0.0, cooldown - 1

    t = thresholds
    delta = 0.0
    if (
        estimate.contact_detected
        and estimate.bpm is not None
        and estimate.quality < t.gain_low_quality
    ):
        # proportional to how far quality is below the bar
        shortfall = (t.gain_low_quality - estimate.quality) / t.gain_low_quality
        delta = t.gain_nudge_up * shortfall
    elif not estimate.contact_detected and estimate.gain > t.gain_high:
        delta = -t.gain_nudge_down
    elif estimate.gain < t.gain_low and estimate.quality > 0:
        delta = t.gain_recover

    if delta == 0.0:
        return 0.0, 0
    return delta, t.gain_cooldown_frames


def seed_gains(n_channels: int) -> List[float]:
    """Initial gains spread ±8 % per step around 1.0."""
    return [1.0 + (i - n_channels // 2) * GAIN_SPREAD for i in range(n_channels)]


class ConsensusManager:
    """
    Owns *n_channels* channel filters and fuses their estimates.

    Parameters
    ----------
    n_channels:
        Number of parallel channels (default 6).
    thresholds:
        Detection thresholds shared by all channels.
    """

    def __init__(
        self,
        n_channels: int = 6,
        thresholds: DetectionThresholds | None = None,
    ) -> None:
        if n_channels < 1:
            raise ValueError("n_channels must be >= 1")
        self.thresholds = thresholds or DetectionThresholds()
        gains = [
            float(np.clip(g, self.thresholds.gain_min, self.thresholds.gain_max))
            for g in seed_gains(n_channels)
        ]
        self.channels = [
            ChannelFilter(i, self.thresholds, initial_gain=g) for i, g in enumerate(gains)
        ]
        self._debounce = DebounceState()
        self._cooldowns = [0] * n_channels
        self._bpm_history: Deque[float] = deque(maxlen=10)
        self._last_timestamp = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def n_channels(self) -> int:
        return len(self.channels)

    @property
    def finger_detected(self) -> bool:
        return self._debounce.detected

    @property
    def gains(self) -> List[float]:
        return [ch.gain for ch in self.channels]

    def push_sample(self, raw_value: float, timestamp_ms: float) -> None:
        """Fan one raw sample out to every channel unchanged."""
        for ch in self.channels:
            ch.push_sample(raw_value, timestamp_ms)
        self._last_timestamp = timestamp_ms

    def analyze_all(self, coverage_ratio: float, frame_diff: float) -> ConsensusResult:
        """
        Analyse every channel and fuse the results for this frame.

        Parameters
        ----------
        coverage_ratio:
            Fraction of the frame covered by a fingertip (external hint).
        frame_diff:
            Frame-to-frame difference (external motion hint).
        """
        t = self.thresholds
        estimates = [ch.analyze() for ch in self.channels]

        contact_count = sum(1 for e in estimates if e.contact_detected)
        needed = max(1, math.ceil(self.n_channels * t.consensus_ratio))
        frame_positive = (
            contact_count >= needed
            and coverage_ratio >= t.min_coverage
            and frame_diff <= t.max_frame_diff
        )

        was_detected = self._debounce.detected
        self._debounce = debounce_step(
            self._debounce, frame_positive, t.confirm_frames, t.release_frames
        )
        if self._debounce.detected != was_detected:
            logger.info(
                "Finger %s (%d/%d channels in contact)",
                "detected" if self._debounce.detected else "lost",
                contact_count,
                self.n_channels,
            )
            if not self._debounce.detected:
                self._bpm_history.clear()

        self._apply_gain_feedback(estimates)

        bpm: Optional[float] = None
        quality = 0.0
        if self._debounce.detected:
            bpm, quality = self._aggregate(estimates)

        return ConsensusResult(
            timestamp_ms=self._last_timestamp,
            channel_estimates=estimates,
            aggregated_bpm=bpm,
            aggregated_quality=quality,
            finger_detected=self._debounce.detected,
            contact_channels=contact_count,
        )

    def adjust_channel_gain(self, channel_id: int, delta: float) -> float:
        return self.channels[channel_id].adjust_gain_rel(delta)

    def apply_thresholds(self, thresholds: DetectionThresholds) -> None:
        self.thresholds = thresholds
        for ch in self.channels:
            ch.apply_thresholds(thresholds)

    def stats(self) -> Dict[str, object]:
        """Snapshot of controller state for diagnostics."""
        return {
            "n_channels": self.n_channels,
            "gains": self.gains,
            "finger_detected": self._debounce.detected,
            "positive_run": self._debounce.positive_run,
            "negative_run": self._debounce.negative_run,
            "recent_bpm": list(self._bpm_history),
        }

    def reset(self) -> None:
        """Clear channel windows and debounce state; gains are kept."""
        for ch in self.channels:
            ch.reset()
        self._clear_state()

    def full_reset(self) -> None:
        """:meth:`reset` and restore every channel's seeded gain."""
        for ch in self.channels:
            ch.full_reset()
        self._clear_state()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _clear_state(self) -> None:
        self._debounce = DebounceState()
        self._cooldowns = [0] * self.n_channels
        self._bpm_history.clear()
        self._last_timestamp = 0.0

    def _apply_gain_feedback(self, estimates: List[ChannelEstimate]) -> None:
        for i, (ch, est) in enumerate(zip(self.channels, estimates)):
            delta, self._cooldowns[i] = gain_feedback(est, self._cooldowns[i], self.thresholds)
            if delta:
                new_gain = ch.adjust_gain_rel(delta)
                logger.debug("channel %d gain -> %.3f (delta %+.3f)", i, new_gain, delta)

    def _aggregate(self, estimates: List[ChannelEstimate]) -> Tuple[Optional[float], float]:
        t = self.thresholds
        candidates = [e for e in estimates if e.bpm is not None and e.bpm > 0]
        if not candidates:
            return None, 0.0

        good = [e for e in candidates if e.quality >= t.min_channel_quality]
        if good:
            bpms = np.array([e.bpm for e in good])
            weights = np.array([e.quality for e in good])
            keep = iqr_filter(bpms)
            bpm = float(np.average(bpms[keep], weights=weights[keep]))
            base_quality = float(np.mean(weights[keep]))
        else:
            bpm = float(np.mean([e.bpm for e in candidates]))
            base_quality = float(np.mean([e.quality for e in candidates]))

        self._bpm_history.append(bpm)
        quality = base_quality + min(20.0, 4.0 * len(good))
        if len(self._bpm_history) >= 3:
            spread = float(np.std(self._bpm_history))
            if spread < STABLE_BPM_STD:
                quality += 10.0
            else:
                quality -= min(30.0, 2.0 * spread)
        return bpm, float(np.clip(quality, 0.0, 100.0))
