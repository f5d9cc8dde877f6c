"""
Frame source for fingertip capture.

Wraps picamera2 on a Raspberry Pi and falls back to OpenCV VideoCapture for
any webcam.  A video file path can be given instead of a device, which makes
recorded sessions replayable with their original timing.
"""

from __future__ import annotations

import logging
import time
from typing import Generator, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Try importing picamera2 (only available on Raspberry Pi OS)
# ---------------------------------------------------------------------------
try:
    from picamera2 import Picamera2
    _PICAMERA2_AVAILABLE = True
except ImportError:
    _PICAMERA2_AVAILABLE = False

MAX_NULL_FRAMES = 10


class FingertipCamera:
    """
    Camera or video-file frame source.

    Parameters
    ----------
    resolution:
        (width, height) of captured frames.
    fps:
        Target frame rate.
    camera_index:
        OpenCV device index used when picamera2 is unavailable.
    video_path:
        Read frames from this file instead of a live device.  Timestamps are
        taken from the file's own position.
    """

    def __init__(
        self,
        resolution: Tuple[int, int] = (640, 480),
        fps: int = 30,
        camera_index: int = 0,
        video_path: str | None = None,
    ) -> None:
        self.resolution = resolution
        self.fps = fps
        self.camera_index = camera_index
        self.video_path = video_path

        self._cam: "Picamera2 | cv2.VideoCapture | None" = None
        self._use_picamera2 = _PICAMERA2_AVAILABLE and video_path is None
        self._t0: float | None = None

    @property
    def backend(self) -> str:
        if self.video_path is not None:
            return "file"
        return "picamera2" if self._use_picamera2 else "opencv"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Initialise and start the source."""
        if self._use_picamera2:
            self._open_picamera2()
        else:
            self._open_opencv()
        self._t0 = None
        logger.info("Camera opened – backend=%s resolution=%s fps=%d",
                    self.backend, self.resolution, self.fps)

    def close(self) -> None:
        """Stop and release the source."""
        if self._cam is None:
            return
        if self._use_picamera2:
            self._cam.stop()
            self._cam.close()
        else:
            self._cam.release()
        self._cam = None
        logger.info("Camera closed.")

    def __enter__(self) -> "FingertipCamera":
        self.open()
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Frame acquisition
    # ------------------------------------------------------------------

    def read_frame(self) -> Tuple[float, np.ndarray | None]:
        """
        Capture a single frame.

        Returns
        -------
        (timestamp_ms, frame):
            Timestamp relative to the first frame and a BGR image, or
            ``None`` in place of the image on failure.
        """
        if self._cam is None:
            raise RuntimeError("Camera is not open.  Call open() first.")
        frame = self._read_picamera2() if self._use_picamera2 else self._read_opencv()
        return self._timestamp(), frame

    def frames(self) -> Generator[Tuple[float, np.ndarray], None, None]:
        """
        Yield ``(timestamp_ms, frame)`` until the source ends or fails.

        A live device may drop up to ``MAX_NULL_FRAMES`` frames in a row; a
        video file ends at its first failed read.
        """
        null_streak = 0
        while self._cam is not None:
            timestamp_ms, frame = self.read_frame()
            if frame is None:
                if self.video_path is not None:
                    logger.info("End of video %s.", self.video_path)
                    break
                null_streak += 1
                if null_streak >= MAX_NULL_FRAMES:
                    logger.error("Camera returned %d consecutive None frames – aborting.",
                                 MAX_NULL_FRAMES)
                    break
                continue
            null_streak = 0
            yield timestamp_ms, frame

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _timestamp(self) -> float:
        if self.video_path is not None and not self._use_picamera2:
            return float(self._cam.get(cv2.CAP_PROP_POS_MSEC))
        now = time.monotonic() * 1000.0
        if self._t0 is None:
            self._t0 = now
        return now - self._t0

    def _open_picamera2(self) -> None:
        cam = Picamera2()
        w, h = self.resolution
        config = cam.create_video_configuration(
            main={"size": (w, h), "format": "RGB888"},
            buffer_count=4,
        )
        cam.configure(config)
        frame_duration = int(1_000_000 / self.fps)
        try:
            cam.set_controls({"FrameDurationLimits": (frame_duration, frame_duration)})
        except RuntimeError as exc:
            logger.warning("Could not set FrameDurationLimits: %s", exc)
        cam.start()
        # let auto-exposure settle
        for _ in range(8):
            cam.capture_array("main")
        self._cam = cam

    def _read_picamera2(self) -> np.ndarray | None:
        frame = self._cam.capture_array("main")
        if frame is None:
            logger.warning("capture_array returned None.")
            return None
        if frame.ndim == 3 and frame.shape[2] == 4:
            frame = frame[:, :, :3]
        return cv2.cvtColor(frame, cv2.COLOR_RGB2BGR)

    def _open_opencv(self) -> None:
        source = self.video_path if self.video_path is not None else self.camera_index
        cap = cv2.VideoCapture(source)
        if not cap.isOpened():
            raise RuntimeError(f"Cannot open video source {source!r}")
        if self.video_path is None:
            w, h = self.resolution
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
            cap.set(cv2.CAP_PROP_FPS, self.fps)
        self._cam = cap

    def _read_opencv(self) -> np.ndarray | None:
        ok, frame = self._cam.read()
        if not ok:
            if self.video_path is None:
                logger.warning("VideoCapture.read() returned False.")
            return None
        return frame
