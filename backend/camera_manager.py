"""
Capture device access for the attendance workflow.

A device is held exclusively for one capture cycle: ``acquire()`` opens it
and the handle is released on every exit path, including errors and
cancellation.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Optional

import cv2
import numpy as np

from errors import CameraError

logger = logging.getLogger(__name__)


class CameraType(str, Enum):
    WEBCAM = "webcam"
    RTSP = "rtsp"
    HTTP = "http"
    FILE = "file"


class CaptureSession:
    """An open device handle for one capture cycle."""

    async def frame(self) -> bytes:
        raise NotImplementedError


class CaptureDevice:
    """Contract for capture devices used by the workflow."""

    def acquire(self):
        """Async context manager yielding a CaptureSession."""
        raise NotImplementedError


def open_capture(source: str, camera_type: CameraType) -> cv2.VideoCapture:
    """Open an OpenCV capture for the given source type."""
    if camera_type == CameraType.WEBCAM:
        cap = cv2.VideoCapture(int(source))
    elif camera_type == CameraType.RTSP:
        cap = cv2.VideoCapture(source, cv2.CAP_FFMPEG)
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)  # Minimal buffer for low latency
    elif camera_type in (CameraType.HTTP, CameraType.FILE):
        cap = cv2.VideoCapture(source)
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
    else:
        raise ValueError(f"Unsupported camera type: {camera_type}")
    return cap


class OpenCVCaptureSession(CaptureSession):

    def __init__(self, cap: cv2.VideoCapture, camera_type: CameraType, jpeg_quality: int = 90):
        self.cap = cap
        self.camera_type = camera_type
        self.jpeg_quality = jpeg_quality

    def _read(self) -> np.ndarray:
        # Network streams buffer; skip stale frames to get the latest one
        if self.camera_type in (CameraType.RTSP, CameraType.HTTP):
            for _ in range(5):
                if not self.cap.grab():
                    break
            ret, frame = self.cap.retrieve()
            if ret and frame is not None:
                return frame

        ret, frame = self.cap.read()
        if not ret or frame is None:
            raise CameraError("Failed to read frame from camera")
        return frame

    def read_jpeg(self) -> bytes:
        frame = self._read()
        success, buffer = cv2.imencode('.jpg', frame, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if not success:
            raise CameraError("Failed to encode frame")
        return buffer.tobytes()

    async def frame(self) -> bytes:
        return await asyncio.to_thread(self.read_jpeg)


class OpenCVCaptureDevice(CaptureDevice):
    """
    Webcam, RTSP, HTTP/IP camera or video file opened through OpenCV.
    Only one capture session may be open at a time.
    """

    def __init__(self, source: str, camera_type: CameraType = CameraType.WEBCAM):
        self.source = source
        self.camera_type = CameraType(camera_type)
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def acquire(self):
        if self._lock.locked():
            raise CameraError("Camera is already in use")

        async with self._lock:
            cap: Optional[cv2.VideoCapture] = None
            try:
                cap = await asyncio.to_thread(open_capture, self.source, self.camera_type)
                if not cap.isOpened():
                    raise CameraError(f"Failed to open camera source: {self.source}")
                logger.debug("Camera %s acquired", self.source)
                yield OpenCVCaptureSession(cap, self.camera_type)
            finally:
                if cap is not None:
                    cap.release()
                    logger.debug("Camera %s released", self.source)
