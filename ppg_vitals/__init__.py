"""
PPG Vitals — fingertip photoplethysmography from camera colour statistics.
Place a finger over the lens with the light behind it; the pipeline turns
per-frame colour means into heart rate, RR intervals, signal quality,
rhythm classification and vital-sign estimates.
"""

from .pipeline import VitalsSession
from .types import RawSample, VitalSignsResult

__version__ = "0.2.0"
__all__ = ["VitalsSession", "RawSample", "VitalSignsResult"]
