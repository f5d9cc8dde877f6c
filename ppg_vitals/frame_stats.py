"""
Frame → :class:`RawSample` reduction.

When a finger covers the lens and the scene is lit from behind, the frame
becomes:
  - dominated by red (blood-perfused tissue),
  - neither black nor saturated,
  - nearly uniform, with little change from frame to frame.

Channel means and standard deviations come from ``cv2.meanStdDev``; the
coverage ratio is the fraction of pixels that look like lit fingertip; the
frame difference is the mean absolute change of a downscaled grey image.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import cv2
import numpy as np

from .types import RawSample

logger = logging.getLogger(__name__)

DIFF_SIZE: Tuple[int, int] = (64, 48)


class FrameStatistics:
    """
    Per-frame colour statistics extractor.

    Parameters
    ----------
    roi_fraction:
        Side length of the centred region of interest as a fraction of the
        frame (1.0 = whole frame).
    red_dominance:
        Minimum red / green ratio for a pixel to count as fingertip.
    min_red:
        Minimum red level for a covered pixel (darker means no light).
    saturation:
        Red level at or above which a pixel is considered clipped.
    """

    def __init__(
        self,
        roi_fraction: float = 0.6,
        red_dominance: float = 1.05,
        min_red: float = 40.0,
        saturation: float = 250.0,
    ) -> None:
        if not 0.0 < roi_fraction <= 1.0:
            raise ValueError("roi_fraction must be in (0, 1]")
        self.roi_fraction = roi_fraction
        self.red_dominance = red_dominance
        self.min_red = min_red
        self.saturation = saturation
        self._prev_gray: Optional[np.ndarray] = None

    def compute(self, frame: np.ndarray, timestamp_ms: float) -> RawSample:
        """
        Reduce one frame to a :class:`RawSample`.

        Parameters
        ----------
        frame:
            BGR image array (H × W × 3, uint8).
        timestamp_ms:
            Capture time of the frame.
        """
        roi = self.roi(frame)
        means, stds = cv2.meanStdDev(roi)
        blue, green, red = (float(v) for v in means.ravel()[:3])
        blue_std, green_std, red_std = (float(v) for v in stds.ravel()[:3])

        gray = cv2.cvtColor(roi, cv2.COLOR_BGR2GRAY)
        small = cv2.resize(gray, DIFF_SIZE, interpolation=cv2.INTER_AREA)
        if self._prev_gray is None:
            frame_diff = 0.0
        else:
            frame_diff = float(cv2.absdiff(small, self._prev_gray).mean())
        self._prev_gray = small

        return RawSample(
            timestamp_ms=float(timestamp_ms),
            red_mean=red,
            green_mean=green,
            blue_mean=blue,
            brightness_mean=float(gray.mean()),
            red_std=red_std,
            green_std=green_std,
            blue_std=blue_std,
            frame_diff=frame_diff,
            coverage_ratio=self.coverage(roi),
        )

    def roi(self, frame: np.ndarray) -> np.ndarray:
        """Centred square-ish patch of the frame."""
        if self.roi_fraction >= 1.0:
            return frame
        h, w = frame.shape[:2]
        rh = max(1, int(h * self.roi_fraction))
        rw = max(1, int(w * self.roi_fraction))
        y0 = (h - rh) // 2
        x0 = (w - rw) // 2
        return frame[y0:y0 + rh, x0:x0 + rw]

    def coverage(self, roi: np.ndarray) -> float:
        """Fraction of pixels that are red-dominant, lit and unsaturated."""
        b = roi[:, :, 0].astype(np.float32)
        g = roi[:, :, 1].astype(np.float32)
        r = roi[:, :, 2].astype(np.float32)
        mask = (
            (r >= self.min_red)
            & (r < self.saturation)
            & (r >= self.red_dominance * g)
            & (r >= b)
        )
        return float(mask.mean()) if mask.size else 0.0

    def reset(self) -> None:
        self._prev_gray = None
