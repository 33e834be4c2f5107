"""
Exam Gate - Camera Capture

The webcam as a scoped resource: opened for the capture step and released on
every exit path.
"""

import logging
from pathlib import Path
from typing import Callable, Optional, Union

import cv2
import numpy as np

from exam_gate.app.errors import CameraUnavailableError

logger = logging.getLogger(__name__)


class CameraSession:
    """
    Context-managed OpenCV camera.

    Usage:
        with CameraSession(0) as camera:
            frame = camera.read_frame()
    """

    # Auto-exposure needs a few frames after the device opens
    WARMUP_FRAMES = 3

    def __init__(
        self,
        camera_index: int = 0,
        warmup_frames: Optional[int] = None,
        capture_factory: Callable = cv2.VideoCapture
    ):
        self.camera_index = camera_index
        self.warmup_frames = self.WARMUP_FRAMES if warmup_frames is None else warmup_frames
        self._capture_factory = capture_factory
        self._cap = None

    def open(self):
        """Acquire the camera."""
        if self._cap is not None:
            return
        cap = self._capture_factory(self.camera_index)
        if not cap.isOpened():
            cap.release()
            raise CameraUnavailableError(f"Camera {self.camera_index} not accessible")
        self._cap = cap
        logger.debug(f"Camera {self.camera_index} opened")

    def read_frame(self) -> np.ndarray:
        """Grab one BGR still frame."""
        if self._cap is None:
            raise CameraUnavailableError("Camera is not open")

        for _ in range(self.warmup_frames):
            self._cap.read()

        ret, frame = self._cap.read()
        if not ret or frame is None:
            raise CameraUnavailableError(f"Camera {self.camera_index} returned no frame")
        return frame

    def close(self):
        """Release the camera. Safe to call more than once."""
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.debug(f"Camera {self.camera_index} released")

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def __enter__(self) -> "CameraSession":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class StillImageSource:
    """
    Frame source backed by an image file or encoded bytes.

    Stands in for the camera when verifying against an uploaded photo.
    """

    def __init__(self, image: Union[str, Path, bytes]):
        self.image = image

    def read_frame(self) -> np.ndarray:
        if isinstance(self.image, (bytes, bytearray)):
            frame = cv2.imdecode(np.frombuffer(bytes(self.image), dtype=np.uint8), cv2.IMREAD_COLOR)
        else:
            frame = cv2.imread(str(self.image), cv2.IMREAD_COLOR)
        if frame is None:
            raise CameraUnavailableError(f"Could not read image: {self.image!r:.60}")
        return frame

    def __enter__(self) -> "StillImageSource":
        return self

    def __exit__(self, exc_type, exc, tb):
        return False
