"""
Value types passed between pipeline stages.

Every stage communicates through these plain dataclasses; nothing here holds
references back into a component, so results can be logged, copied or handed
to a UI thread freely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import List, Optional, Tuple


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class InvalidReason(Enum):
    NO_SIGNAL = auto()
    LOW_PULSATILITY = auto()
    TOO_NOISY = auto()
    MOTION_ARTIFACT = auto()


class CalibrationState(Enum):
    IDLE = auto()
    COLLECTING = auto()
    ANALYZING = auto()
    COMPLETE = auto()
    FAILED = auto()


class DetectorState(Enum):
    WARMUP = auto()
    ACTIVE = auto()


class ArrhythmiaType(Enum):
    NORMAL = auto()
    AF_LIKE = auto()
    ECTOPIC = auto()
    BIGEMINY = auto()
    TRIGEMINY = auto()
    IRREGULAR = auto()


class RiskLevel(Enum):
    LOW = auto()
    MEDIUM = auto()
    HIGH = auto()


# ---------------------------------------------------------------------------
# Per-frame input
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawSample:
    """
    Colour statistics of one camera frame.

    Attributes
    ----------
    timestamp_ms:
        Capture time in milliseconds (any monotonic origin).
    red_mean, green_mean, blue_mean:
        Mean channel intensity (0 – 255).
    brightness_mean:
        Mean luma of the frame.
    red_std, green_std, blue_std:
        Spatial standard deviation of each channel.
    frame_diff:
        Mean absolute difference to the previous frame (motion hint).
    coverage_ratio:
        Fraction of pixels that plausibly belong to a fingertip (0 – 1).
    """

    timestamp_ms: float
    red_mean: float
    green_mean: float
    blue_mean: float
    brightness_mean: float = 0.0
    red_std: float = 0.0
    green_std: float = 0.0
    blue_std: float = 0.0
    frame_diff: float = 0.0
    coverage_ratio: float = 1.0

    @property
    def rg_ratio(self) -> float:
        return self.red_mean / max(self.green_mean, 1e-6)


# ---------------------------------------------------------------------------
# Channel / consensus
# ---------------------------------------------------------------------------

@dataclass
class ChannelEstimate:
    channel_id: int
    bpm: Optional[float]
    snr: float
    quality: float
    contact_detected: bool
    gain: float
    peak_count: int = 0


@dataclass
class ConsensusResult:
    timestamp_ms: float
    channel_estimates: List[ChannelEstimate]
    aggregated_bpm: Optional[float]
    aggregated_quality: float
    finger_detected: bool
    contact_channels: int = 0


# ---------------------------------------------------------------------------
# Beat detection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BeatEvent:
    """Emitted once per confirmed beat."""

    timestamp_ms: float
    bpm: float
    confidence: float
    rr_interval_ms: Optional[float]


@dataclass
class BeatResult:
    bpm: float
    confidence: float
    is_peak: bool
    filtered_value: float
    state: DetectorState
    rr_interval_ms: Optional[float] = None


# ---------------------------------------------------------------------------
# Quality
# ---------------------------------------------------------------------------

@dataclass
class QualityResult:
    """
    Signal-quality verdict.

    ``valid`` is False both when there is not enough data yet and when the
    signal was explicitly rejected.  The two cases are told apart by
    ``invalid_reason``: it is ``None`` for "no data yet".
    """

    quality: float
    valid: bool
    invalid_reason: Optional[InvalidReason]
    perfusion_index: float = 0.0
    snr_db: float = 0.0
    periodicity: float = 0.0
    stability: float = 0.0

    @property
    def has_data(self) -> bool:
        return self.valid or self.invalid_reason is not None


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CalibrationProfile:
    red_baseline: float
    green_baseline: float
    blue_baseline: float
    red_std: float
    green_std: float
    blue_std: float
    rg_ratio_mean: float
    rg_ratio_std: float
    signal_amplitude: float
    noise_level: float
    contact_threshold: float
    rg_ratio_bounds: Tuple[float, float]
    peak_threshold: float
    min_signal_range: float
    peaks_detected: int
    confidence: float
    sample_count: int
    timestamp_ms: float


# ---------------------------------------------------------------------------
# Features / vitals / rhythm
# ---------------------------------------------------------------------------

@dataclass
class PulseFeatures:
    ac_dc_ratio: float = 0.0
    perfusion_ratio: float = 0.0
    pulse_width_ms: float = 0.0
    dicrotic_depth: float = 0.0
    systolic_time_ms: float = 0.0
    amplitude_variability: float = 0.0
    augmentation_index: float = 0.0
    stiffness_index: float = 0.0
    sdnn: float = 0.0
    rmssd: float = 0.0
    rr_cv: float = 0.0


@dataclass
class BloodPressure:
    systolic: float = 0.0
    diastolic: float = 0.0


@dataclass
class Lipids:
    cholesterol: float = 0.0
    triglycerides: float = 0.0


@dataclass(frozen=True)
class PulseValidation:
    valid: bool
    valid_intervals: int
    cv: float
    reason: str = ""


@dataclass
class VitalSignsResult:
    spo2: float = 0.0
    glucose: float = 0.0
    hemoglobin: float = 0.0
    pressure: BloodPressure = field(default_factory=BloodPressure)
    lipids: Lipids = field(default_factory=Lipids)
    arrhythmia_count: int = 0
    arrhythmia_status: str = ""
    is_calibrating: bool = False
    calibration_progress: float = 0.0
    pulse_validated: bool = False
    invalid_reason: str = ""

    def is_zero(self) -> bool:
        """True when every numeric field is exactly zero and status is empty."""
        return (
            self.spo2 == 0.0
            and self.glucose == 0.0
            and self.hemoglobin == 0.0
            and self.pressure.systolic == 0.0
            and self.pressure.diastolic == 0.0
            and self.lipids.cholesterol == 0.0
            and self.lipids.triglycerides == 0.0
            and self.arrhythmia_count == 0
            and self.arrhythmia_status == ""
        )


@dataclass
class HRVMetrics:
    mean_rr: float = 0.0
    sdnn: float = 0.0
    rmssd: float = 0.0
    pnn50: float = 0.0
    pnn20: float = 0.0
    cv: float = 0.0
    shannon_entropy: float = 0.0
    sample_entropy: float = 0.0
    count: int = 0


@dataclass
class ArrhythmiaClassification:
    detected: bool = False
    type: ArrhythmiaType = ArrhythmiaType.NORMAL
    confidence: float = 0.0
    risk_level: RiskLevel = RiskLevel.LOW
    sd1: float = 0.0
    sd2: float = 0.0
    pattern: str = ""
    sd1_sd2_ratio: float = 0.0
    ectopic_beats: int = 0


@dataclass
class FrameResult:
    """Everything the session produced for one frame."""

    consensus: ConsensusResult
    beat: BeatResult
    quality: QualityResult
    calibration_state: CalibrationState
    vitals: Optional[VitalSignsResult] = None
    rhythm: Optional[ArrhythmiaClassification] = None
