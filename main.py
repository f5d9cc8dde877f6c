#!/usr/bin/env python3
"""
PPG Vitals – main entry point.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --resolution WxH     Camera resolution (default: 640x480)
    --fps INT            Target frame rate (default: 30)
    --camera-index INT   OpenCV camera index (fallback, default: 0)
    --video PATH         Replay a recorded video instead of a live camera
    --channels INT       Number of consensus channels (default: 6)
    --window FLOAT       Channel analysis window in seconds (default: 8)
    --no-calibration     Skip the initial calibration phase
    --log-interval FLOAT Seconds between status lines (default: 1)
    --debug              Verbose per-frame logging

Press Ctrl-C to stop.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace

from ppg_vitals.camera import FingertipCamera
from ppg_vitals.config import DetectionThresholds, SessionConfig
from ppg_vitals.frame_stats import FrameStatistics
from ppg_vitals.pipeline import VitalsSession
from ppg_vitals.types import BeatEvent, CalibrationState, FrameResult

logger = logging.getLogger("ppg_vitals")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fingertip PPG vital-sign monitor",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--resolution", default="640x480",
                        help="Camera resolution, e.g. 640x480")
    parser.add_argument("--fps", type=int, default=30,
                        help="Target capture frame rate")
    parser.add_argument("--camera-index", type=int, default=0,
                        help="OpenCV VideoCapture index (fallback)")
    parser.add_argument("--video", default=None,
                        help="Read frames from this video file")
    parser.add_argument("--channels", type=int, default=6,
                        help="Number of consensus channels")
    parser.add_argument("--window", type=float, default=8.0,
                        help="Channel analysis window in seconds")
    parser.add_argument("--no-calibration", action="store_true",
                        help="Skip the initial calibration phase")
    parser.add_argument("--log-interval", type=float, default=1.0,
                        help="Seconds between status lines")
    parser.add_argument("--debug", action="store_true",
                        help="Enable debug logging")
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def _on_beat(event: BeatEvent) -> None:
    logger.debug("beat at %.0f ms (bpm=%.1f conf=%.2f)",
                 event.timestamp_ms, event.bpm, event.confidence)


def format_status(result: FrameResult, session: VitalsSession) -> str:
    """One human-readable status line."""
    if result.calibration_state is CalibrationState.COLLECTING:
        return f"Calibrating… {session.calibration.progress * 100:.0f}%"
    consensus = result.consensus
    if not consensus.finger_detected:
        return "Waiting for finger…"
    quality = result.quality
    if not quality.has_data:
        return "Finger detected – collecting signal…"
    vitals = session.last_vitals
    bpm = result.beat.bpm or consensus.aggregated_bpm or 0.0
    if not vitals.pulse_validated:
        reason = quality.invalid_reason.name if quality.invalid_reason else vitals.invalid_reason
        return f"BPM={bpm:.0f}  quality={quality.quality:.0f}  (not validated: {reason})"
    return (
        f"BPM={bpm:.0f}  SpO2={vitals.spo2:.0f}%  "
        f"BP={vitals.pressure.systolic:.0f}/{vitals.pressure.diastolic:.0f}  "
        f"quality={quality.quality:.0f}  rhythm={vitals.arrhythmia_status or '-'} "
        f"events={vitals.arrhythmia_count}"
    )


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    try:
        res_w, res_h = (int(v) for v in args.resolution.lower().split("x"))
    except ValueError:
        logger.error("Invalid --resolution format.  Use WxH, e.g. 640x480.")
        return 1

    try:
        thresholds = replace(DetectionThresholds(), window_ms=args.window * 1000.0)
        session = VitalsSession(
            SessionConfig(n_channels=args.channels, calibrate=not args.no_calibration),
            thresholds=thresholds,
            on_beat=_on_beat,
        )
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    camera = FingertipCamera(
        resolution=(res_w, res_h),
        fps=args.fps,
        camera_index=args.camera_index,
        video_path=args.video,
    )
    stats = FrameStatistics()
    log_interval_ms = args.log_interval * 1000.0
    last_log_ms: float | None = None

    logger.info("Starting PPG vitals monitor.  Press Ctrl-C to quit.")
    try:
        with camera:
            for timestamp_ms, frame in camera.frames():
                result = session.process_frame(stats.compute(frame, timestamp_ms))
                if last_log_ms is None or timestamp_ms - last_log_ms >= log_interval_ms:
                    logger.info(format_status(result, session))
                    last_log_ms = timestamp_ms
    except RuntimeError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted.")

    if session.calibration_state is CalibrationState.FAILED:
        logger.warning("Calibration failed: %s", session.calibration.failure_reason)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )
    return run(args)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    sys.exit(main())
