"""
RR-interval rhythm analysis.

Two views over the same rolling RR window:

* classical HRV statistics feeding a rule-based irregularity flag, and
* a Poincaré plot (RR[n] against RR[n+1]) with

      SD1 = sqrt(var(RR[n+1] − RR[n]) / 2)
      SD2 = sqrt(var(RR[n+1] + RR[n]) / 2)

  plus explicit pattern matching for bigeminy and trigeminy.

Pattern precedence: bigeminy, trigeminy, isolated ectopic beats, AF-like,
irregular, normal.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Sequence

import numpy as np

from .config import RhythmConfig
from .features import valid_rr
from .types import ArrhythmiaClassification, ArrhythmiaType, HRVMetrics, RiskLevel

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# HRV
# ---------------------------------------------------------------------------

def shannon_entropy(rr: np.ndarray, bin_ms: float = 25.0) -> float:
    """Entropy (bits) of the RR histogram with fixed-width bins."""
    if len(rr) < 2:
        return 0.0
    bins = np.floor((rr - rr.min()) / bin_ms).astype(int)
    counts = np.bincount(bins)
    p = counts[counts > 0] / len(rr)
    return float(-np.sum(p * np.log2(p)))


def sample_entropy(rr: np.ndarray, m: int = 2, r_factor: float = 0.2) -> float:
    """
    Sample entropy with tolerance ``r_factor · std``.

    Template matches are counted with a pairwise Chebyshev distance matrix,
    which is cheap for the short windows used here.
    """
    n = len(rr)
    if n < m + 3:
        return 0.0
    r = r_factor * float(np.std(rr))
    if r <= 0:
        return 0.0

    def matches(length: int) -> int:
        templates = np.array([rr[i:i + length] for i in range(n - m)])
        dist = np.max(np.abs(templates[:, None, :] - templates[None, :, :]), axis=2)
        return int((np.sum(dist <= r) - len(templates)) // 2)

    b = matches(m)
    a = matches(m + 1)
    if a == 0 or b == 0:
        return 0.0
    return float(-math.log(a / b))


def hrv_metrics(rr_intervals: Sequence[float], bin_ms: float = 25.0) -> HRVMetrics:
    """HRV statistics over the valid intervals; all zero below three."""
    rr = valid_rr(rr_intervals)
    if len(rr) < 3:
        return HRVMetrics(count=len(rr))
    diffs = np.abs(np.diff(rr))
    mean = float(np.mean(rr))
    sdnn = float(np.std(rr, ddof=1))
    return HRVMetrics(
        mean_rr=mean,
        sdnn=sdnn,
        rmssd=float(np.sqrt(np.mean(diffs ** 2))),
        pnn50=float(np.mean(diffs > 50.0) * 100.0),
        pnn20=float(np.mean(diffs > 20.0) * 100.0),
        cv=sdnn / mean,
        shannon_entropy=shannon_entropy(rr, bin_ms),
        sample_entropy=sample_entropy(rr),
        count=len(rr),
    )


# ---------------------------------------------------------------------------
# Poincaré
# ---------------------------------------------------------------------------

@dataclass
class PoincareResult:
    sd1: float
    sd2: float
    ratio: float
    area: float
    ectopic_beats: int
    pattern: ArrhythmiaType
    risk: RiskLevel
    description: str


def _cv(values: np.ndarray) -> float:
    mean = float(np.mean(values))
    return float(np.std(values)) / mean if mean > 0 else 0.0


def is_bigeminy(rr: np.ndarray, config: RhythmConfig) -> bool:
    """Alternating long/short intervals, each phase internally regular."""
    d = np.diff(rr)
    if len(d) < 4:
        return False
    threshold = 0.15 * float(np.mean(rr))
    alternating = (np.sign(d[:-1]) != np.sign(d[1:])) & (np.abs(d[:-1]) > threshold) & (
        np.abs(d[1:]) > threshold
    )
    if np.mean(alternating) < config.pattern_fraction:
        return False
    return _cv(rr[0::2]) < config.pattern_cv and _cv(rr[1::2]) < config.pattern_cv


def is_trigeminy(rr: np.ndarray, config: RhythmConfig) -> bool:
    """One short interval in every group of three, at a fixed phase."""
    n = len(rr) - len(rr) % 3
    if n < 9:
        return False
    groups = rr[:n].reshape(-1, 3)
    shortest = np.argmin(groups, axis=1)
    phase = int(np.bincount(shortest, minlength=3).argmax())
    others = np.delete(groups, phase, axis=1).mean(axis=1)
    premature = (shortest == phase) & (groups[:, phase] < 0.8 * others)
    if np.mean(premature) < config.pattern_fraction:
        return False
    return all(_cv(rr[p:n:3]) < config.pattern_cv for p in range(3))


def poincare(rr_intervals: Sequence[float], config: RhythmConfig | None = None) -> PoincareResult:
    """Poincaré descriptors and pattern classification of the valid intervals."""
    config = config or RhythmConfig()
    rr = valid_rr(rr_intervals)
    if len(rr) < config.min_intervals:
        return PoincareResult(0.0, 0.0, 0.0, 0.0, 0, ArrhythmiaType.NORMAL, RiskLevel.LOW,
                              "insufficient data")

    x, y = rr[:-1], rr[1:]
    d = y - x
    sd1 = float(np.sqrt(np.var(d) / 2.0))
    sd2 = float(np.sqrt(np.var(x + y) / 2.0))
    ratio = sd1 / sd2 if sd2 > 0 else 0.0
    area = math.pi * sd1 * sd2

    mean = float(np.mean(rr))
    ectopic = np.abs(d) / math.sqrt(2.0) > config.ectopic_distance * mean
    n_ectopic = int(ectopic.sum())
    residual_sd1 = float(np.sqrt(np.var(d[~ectopic]) / 2.0)) if np.any(~ectopic) else 0.0

    if is_bigeminy(rr, config):
        pattern, risk, text = ArrhythmiaType.BIGEMINY, RiskLevel.MEDIUM, \
            "alternating long/short intervals"
    elif is_trigeminy(rr, config):
        pattern, risk, text = ArrhythmiaType.TRIGEMINY, RiskLevel.MEDIUM, \
            "premature beat every third interval"
    elif 0 < n_ectopic <= max(2, int(0.2 * len(d))) and residual_sd1 < config.irregular_sd1:
        pattern, risk, text = ArrhythmiaType.ECTOPIC, RiskLevel.LOW, \
            f"{n_ectopic} isolated ectopic point(s)"
    elif sd1 > config.af_sd1 and ratio > config.af_ratio:
        pattern, risk, text = ArrhythmiaType.AF_LIKE, RiskLevel.HIGH, \
            "high short-term variability without structure"
    elif sd1 > config.irregular_sd1 or (ratio > config.irregular_ratio and sd1 > 15.0):
        pattern, risk, text = ArrhythmiaType.IRREGULAR, RiskLevel.MEDIUM, "irregular rhythm"
    else:
        pattern, risk, text = ArrhythmiaType.NORMAL, RiskLevel.LOW, "regular rhythm"

    return PoincareResult(sd1, sd2, ratio, area, n_ectopic, pattern, risk, text)


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

class RhythmAnalyzer:
    """
    Rolling RR-window classifier with an arrhythmia event counter.

    An event is counted when either view flags an arrhythmia, at most once
    per ``retrigger_ms``.
    """

    def __init__(self, config: RhythmConfig | None = None) -> None:
        self.config = config or RhythmConfig()
        self._rr: Deque[float] = deque(maxlen=self.config.window)
        self._count = 0
        self._last_event_ms: Optional[float] = None
        self._last = ArrhythmiaClassification()

    @property
    def arrhythmia_count(self) -> int:
        return self._count

    @property
    def last(self) -> ArrhythmiaClassification:
        return self._last

    @property
    def status(self) -> str:
        """Empty until enough intervals, else the pattern name."""
        if len(self._rr) < self.config.min_intervals:
            return ""
        return self._last.type.name

    def update(self, rr_intervals: Sequence[float], now_ms: float) -> ArrhythmiaClassification:
        """Replace the window with the newest valid intervals and classify."""
        self._rr.clear()
        self._rr.extend(valid_rr(rr_intervals)[-self.config.window:])
        rr = np.array(self._rr)
        cfg = self.config

        if len(rr) < cfg.min_intervals:
            self._last = ArrhythmiaClassification(pattern="insufficient data")
            return self._last

        metrics = hrv_metrics(rr, cfg.entropy_bin_ms)
        votes = sum((
            metrics.rmssd > cfg.rmssd_threshold,
            metrics.cv > cfg.cv_threshold,
            metrics.shannon_entropy > cfg.entropy_threshold,
        ))
        hrv_flag = votes >= 2
        p = poincare(rr, cfg)

        detected = hrv_flag or p.pattern is not ArrhythmiaType.NORMAL
        kind = p.pattern
        if hrv_flag and kind is ArrhythmiaType.NORMAL:
            kind = ArrhythmiaType.IRREGULAR
        risk = p.risk
        if hrv_flag and risk is RiskLevel.LOW:
            risk = RiskLevel.MEDIUM

        if detected:
            structured = 0.2 if p.pattern is not ArrhythmiaType.NORMAL else 0.0
            confidence = min(1.0, 0.4 + 0.2 * votes + structured)
            if self._last_event_ms is None or now_ms - self._last_event_ms >= cfg.retrigger_ms:
                self._count += 1
                self._last_event_ms = now_ms
                logger.info("Arrhythmia event #%d: %s (%s)", self._count, kind.name, p.description)
        else:
            confidence = 1.0 - min(1.0, p.sd1 / cfg.af_sd1)

        self._last = ArrhythmiaClassification(
            detected=detected,
            type=kind,
            confidence=float(confidence),
            risk_level=risk,
            sd1=p.sd1,
            sd2=p.sd2,
            pattern=p.description,
            sd1_sd2_ratio=p.ratio,
            ectopic_beats=p.ectopic_beats,
        )
        return self._last

    def reset(self) -> None:
        self._rr.clear()
        self._count = 0
        self._last_event_ms = None
        self._last = ArrhythmiaClassification()
