"""Capture device abstractions."""
from __future__ import annotations

import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import numpy as np

from .errors import CameraError, DeviceAttachFailed, NoCameraAvailable, summarise_exception
from .frames import FrameBuffer

logger = logging.getLogger(__name__)

FrameCallback = Callable[[FrameBuffer], None]

# User visible identifiers for capture back-ends.
CAMERA_SOURCES: dict[str, str] = {
    "auto": "Automatic (OpenCV with synthetic fallback)",
    "opencv": "OpenCV (USB/V4L2 webcam)",
    "synthetic": "Synthetic test pattern",
}

DEFAULT_CAMERA_CHOICE = "auto"

_CAMERA_ALIASES = {
    "cv2": "opencv",
    "usb": "opencv",
    "webcam": "opencv",
    "test": "synthetic",
}


class CaptureDevice(ABC):
    """A source of :class:`FrameBuffer` objects delivered on its own thread."""

    name: str = "capture"

    def __init__(self) -> None:
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._callback: FrameCallback | None = None

    @abstractmethod
    def open(self) -> None:
        """Acquire the device. Raises :class:`DeviceAttachFailed` on failure."""

    @abstractmethod
    def _read_frame(self) -> FrameBuffer | None:
        """Return the next frame, or ``None`` when none is available yet."""

    def _release(self) -> None:
        return None

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self, on_frame: FrameCallback) -> None:
        if self.is_running:
            return
        self._callback = on_frame
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop_event,), name=f"capture-{self.name}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._thread = None

    def close(self) -> None:
        self.stop()
        self._release()

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                frame = self._read_frame()
            except CameraError as exc:
                logger.warning("%s capture error: %s", self.name, exc)
                stop_event.wait(0.1)
                continue
            if frame is None:
                continue
            callback = self._callback
            if callback is None:
                continue
            try:
                callback(frame)
            except Exception:
                logger.exception("Frame callback failed for %s", self.name)


class OpenCVCaptureDevice(CaptureDevice):
    """Capture from a USB/V4L2 camera through OpenCV."""

    name = "opencv"

    def __init__(
        self,
        index: int = 0,
        resolution: tuple[int, int] | None = None,
        *,
        fps: int | None = None,
    ) -> None:
        super().__init__()
        try:
            import cv2
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise NoCameraAvailable("OpenCV is not installed") from exc
        self._cv2 = cv2
        self._index = int(index)
        self._resolution = resolution
        self._fps = fps
        self._capture: Any = None
        self._failures = 0

    def open(self) -> None:
        if self._capture is not None:
            return
        cv2 = self._cv2
        try:
            capture = cv2.VideoCapture(self._index)
        except cv2.error as exc:
            raise DeviceAttachFailed(
                f"Failed to open camera index {self._index}: {summarise_exception(exc)}"
            ) from exc
        if not capture.isOpened():
            capture.release()
            raise DeviceAttachFailed(f"Failed to open camera index {self._index}")
        if self._resolution is not None:
            width, height = self._resolution
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, float(width))
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, float(height))
        if self._fps is not None and self._fps > 0:
            capture.set(cv2.CAP_PROP_FPS, float(self._fps))
        self._capture = capture
        logger.info("Opened OpenCV camera index %d", self._index)

    def _read_frame(self) -> FrameBuffer | None:
        capture = self._capture
        if capture is None:
            raise CameraError("Camera has not been opened")
        ok, frame = capture.read()
        timestamp = time.monotonic()
        if not ok or frame is None:
            self._failures += 1
            if self._failures in (1, 30) or self._failures % 300 == 0:
                logger.warning("Failed to read frame from OpenCV camera (%d)", self._failures)
            time.sleep(0.01)
            return None
        self._failures = 0
        height, width = frame.shape[:2]
        frame = frame[: height - height % 2, : width - width % 2]
        i420 = self._cv2.cvtColor(np.ascontiguousarray(frame), self._cv2.COLOR_BGR2YUV_I420)
        return FrameBuffer(i420, frame.shape[1], frame.shape[0], timestamp, pixel_format="yuv420p")

    def _release(self) -> None:
        capture, self._capture = self._capture, None
        if capture is not None:
            capture.release()


class SyntheticCaptureDevice(CaptureDevice):
    """Generate a moving gradient for development and testing."""

    name = "synthetic"

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        *,
        resolution: tuple[int, int] | None = None,
        fps: int | None = None,
    ) -> None:
        super().__init__()
        if resolution is not None:
            width, height = resolution
        self._width = int(width)
        self._height = int(height)
        self._interval = 1.0 / float(fps or 30)
        self._start = time.monotonic()
        self._next_due = 0.0
        self._opened = False

    def open(self) -> None:
        self._opened = True
        self._start = time.monotonic()
        self._next_due = self._start

    def render(self, timestamp: float) -> FrameBuffer:
        elapsed = timestamp - self._start
        horizontal = np.linspace(0, 255, self._width, dtype=np.uint8)
        vertical = np.linspace(0, 255, self._height, dtype=np.uint8).reshape(-1, 1)
        red = np.tile(horizontal, (self._height, 1))
        green = np.roll(red, int(elapsed * 10), axis=1)
        blue = np.tile(vertical, (1, self._width))
        return FrameBuffer.from_rgb(np.stack([red, green, blue], axis=2), timestamp)

    def _read_frame(self) -> FrameBuffer | None:
        if not self._opened:
            raise CameraError("Camera has not been opened")
        delay = self._next_due - time.monotonic()
        if delay > 0 and self._stop_event.wait(delay):
            return None
        self._next_due = max(self._next_due + self._interval, time.monotonic())
        return self.render(time.monotonic())

    def _release(self) -> None:
        self._opened = False


def resolve_camera_alias(choice: str) -> str:
    """Map a user supplied camera name onto its canonical source identifier."""

    normalised = choice.strip().lower()
    return _CAMERA_ALIASES.get(normalised, normalised)


def _normalise_choice(choice: str | None) -> str:
    if choice is None:
        choice = os.getenv("STEADYTAKE_CAMERA", DEFAULT_CAMERA_CHOICE)
    return resolve_camera_alias(choice)


class CameraDeviceProvider:
    """Resolve the configured camera choice to a device.

    ``"auto"`` prefers OpenCV and falls back to the synthetic source when no
    camera can be opened. No audio source is offered.
    """

    def __init__(
        self,
        choice: str | None = None,
        *,
        resolution: tuple[int, int] | None = None,
        fps: int | None = None,
    ) -> None:
        self.choice = _normalise_choice(choice)
        if self.choice not in CAMERA_SOURCES:
            raise CameraError(f"Unknown camera choice: {choice}")
        self.resolution = resolution
        self.fps = fps

    def video_device(self) -> CaptureDevice | None:
        if self.choice == "synthetic":
            return SyntheticCaptureDevice(resolution=self.resolution, fps=self.fps)
        if self.choice == "opencv":
            try:
                return OpenCVCaptureDevice(resolution=self.resolution, fps=self.fps)
            except NoCameraAvailable as exc:
                logger.error("OpenCV camera unavailable: %s", exc)
                return None
        try:
            device = OpenCVCaptureDevice(resolution=self.resolution, fps=self.fps)
            device.open()
        except CameraError as exc:
            logger.error("OpenCV unavailable during auto selection: %s", exc)
            return SyntheticCaptureDevice(resolution=self.resolution, fps=self.fps)
        return device

    def audio_device(self) -> Any | None:
        return None


__all__ = [
    "CAMERA_SOURCES",
    "DEFAULT_CAMERA_CHOICE",
    "CameraDeviceProvider",
    "CaptureDevice",
    "FrameCallback",
    "OpenCVCaptureDevice",
    "SyntheticCaptureDevice",
    "resolve_camera_alias",
]
