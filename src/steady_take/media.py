"""Media writers that persist captured frames to disk."""
from __future__ import annotations

import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from fractions import Fraction
from pathlib import Path
from typing import Any, Callable

import av
import numpy as np

from .errors import (
    CaptureError,
    DurationLoadFailed,
    MaximumDurationReached,
    RecordingWriteFailed,
)
from .frames import FrameBuffer

logger = logging.getLogger(__name__)

FinishCallback = Callable[[Path, "BaseException | None"], None]

DEFAULT_MAX_DURATION_SECONDS = 30.0


class MediaWriter(ABC):
    """Interface implemented by recording back-ends.

    ``start`` raises when a recording cannot begin. Once started, the writer
    reports completion exactly once through ``on_finish(output, error)`` where
    ``error`` is ``None``, :class:`MaximumDurationReached` or the failure.
    """

    def __init__(self, *, max_duration_seconds: float = DEFAULT_MAX_DURATION_SECONDS) -> None:
        self._max_duration_seconds = self._normalise_duration(max_duration_seconds)

    @staticmethod
    def _normalise_duration(value: float) -> float:
        try:
            duration = float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("Maximum duration must be a number") from exc
        if duration <= 0:
            raise ValueError("Maximum duration must be positive")
        return duration

    @property
    def max_duration_seconds(self) -> float:
        return self._max_duration_seconds

    def configure(
        self, *, max_duration_seconds: float | None = None, fps: int | None = None
    ) -> None:
        """Update limits for subsequent recordings; writers without a frame rate ignore ``fps``."""

        if max_duration_seconds is not None:
            self._max_duration_seconds = self._normalise_duration(max_duration_seconds)

    def attach_audio(self, source: Any) -> None:
        """Attach an audio source to subsequent recordings."""

        raise CaptureError(f"{self.__class__.__name__} does not support audio capture")

    @property
    @abstractmethod
    def is_recording(self) -> bool:
        """Return ``True`` while a recording is in progress."""

    @abstractmethod
    def start(self, destination: Path, on_finish: FinishCallback) -> None:
        """Begin recording to ``destination``."""

    @abstractmethod
    def append(self, frame: FrameBuffer) -> None:
        """Offer a captured frame to the active recording."""

    @abstractmethod
    def stop(self) -> None:
        """Request the active recording to finish."""

    def close(self) -> None:
        if self.is_recording:
            self.stop()


_MILLISECONDS = Fraction(1, 1000)


def _apply_stream_timing(stream: Any, time_base: Fraction) -> None:
    """Use the same time base on the stream and its codec so millisecond pts survive."""

    stream.time_base = time_base
    codec_context = getattr(stream, "codec_context", None)
    if codec_context is None:
        return
    try:
        codec_context.time_base = time_base
    except (AttributeError, TypeError, ValueError):  # pragma: no cover - codec contexts vary
        logger.debug("Codec context rejected time base %s", time_base)


def _codec_candidates(codec: str) -> list[str]:
    codec = codec.lower()
    if codec in {"h264", "libx264"}:
        return ["libx264", "h264", "mpeg4"]
    return [codec, "libx264", "h264", "mpeg4"]


class AVMediaWriter(MediaWriter):
    """Encode frames to MP4 with PyAV on a dedicated worker thread.

    Frames are converted to I420 while the capture buffer is locked and then
    queued; a full queue drops the frame. The recording ends when ``stop`` is
    called or ``max_duration_seconds`` of capture time has been written.
    """

    def __init__(
        self,
        *,
        max_duration_seconds: float = DEFAULT_MAX_DURATION_SECONDS,
        codec: str = "h264",
        fps: int = 30,
        queue_size: int = 64,
    ) -> None:
        super().__init__(max_duration_seconds=max_duration_seconds)
        self.codec = codec
        self.fps = self._normalise_fps(fps)
        self._queue_size = max(1, int(queue_size))
        self._lock = threading.Lock()
        self._active = False
        self._queue: queue.Queue[tuple[np.ndarray, float] | None] | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._dropped = 0

    @staticmethod
    def _normalise_fps(value: int) -> int:
        fps = int(value)
        if fps <= 0:
            raise ValueError("fps must be positive")
        return fps

    def configure(
        self, *, max_duration_seconds: float | None = None, fps: int | None = None
    ) -> None:
        super().configure(max_duration_seconds=max_duration_seconds)
        if fps is not None:
            # The stream rate is read when the next recording adds its stream.
            self.fps = self._normalise_fps(fps)

    @property
    def is_recording(self) -> bool:
        with self._lock:
            return self._active

    @property
    def dropped_frames(self) -> int:
        return self._dropped

    def start(self, destination: Path, on_finish: FinishCallback) -> None:
        destination = Path(destination)
        with self._lock:
            if self._active:
                raise RecordingWriteFailed("Recording already in progress")
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                container = av.open(destination.as_posix(), mode="w")
            except (av.error.FFmpegError, OSError) as exc:
                raise RecordingWriteFailed(f"Unable to open {destination}: {exc}") from exc
            self._queue = queue.Queue(maxsize=self._queue_size)
            self._stop_event = threading.Event()
            self._dropped = 0
            self._active = True
            self._thread = threading.Thread(
                target=self._run,
                args=(container, destination, self._queue, self._stop_event, on_finish),
                name="steadytake-writer",
                daemon=True,
            )
            self._thread.start()
        logger.debug("Media writer started: %s", destination)

    def append(self, frame: FrameBuffer) -> None:
        with self._lock:
            target = self._queue if self._active else None
        if target is None:
            return
        with frame.locked():
            try:
                payload = frame.as_i420()
            except ValueError:
                logger.debug("Skipping unreadable frame %r", frame)
                return
        try:
            target.put_nowait((payload, frame.timestamp))
        except queue.Full:
            self._dropped += 1
            if self._dropped == 1 or self._dropped % 30 == 0:
                logger.warning("Media writer queue full; dropped %d frame(s)", self._dropped)

    def stop(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._stop_event.set()
            target = self._queue
        if target is not None:
            try:
                target.put_nowait(None)
            except queue.Full:
                pass

    def join(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def close(self) -> None:
        self.stop()
        self.join()

    # ------------------------------------------------------------------
    def _run(
        self,
        container: Any,
        destination: Path,
        frames: "queue.Queue[tuple[np.ndarray, float] | None]",
        stop_event: threading.Event,
        on_finish: FinishCallback,
    ) -> None:
        error: BaseException | None = None
        limit = self.max_duration_seconds
        started = time.monotonic()
        stream = None
        first_timestamp: float | None = None
        last_pts = -1
        written = 0
        try:
            while True:
                try:
                    item = frames.get(timeout=0.1)
                except queue.Empty:
                    if stop_event.is_set():
                        break
                    if time.monotonic() - started >= limit:
                        error = MaximumDurationReached(f"Maximum duration of {limit:g}s reached")
                        break
                    continue
                if item is None:
                    break
                payload, timestamp = item
                if first_timestamp is None:
                    first_timestamp = timestamp
                elapsed = timestamp - first_timestamp
                if elapsed >= limit:
                    error = MaximumDurationReached(f"Maximum duration of {limit:g}s reached")
                    break
                height, width = payload.shape[0] * 2 // 3, payload.shape[1]
                if stream is None:
                    stream = self._add_stream(container, width, height)
                elif (stream.width, stream.height) != (width, height):
                    logger.warning("Dropping %dx%d frame from %dx%d recording", width, height, stream.width, stream.height)
                    continue
                pts = max(last_pts + 1, int(round(elapsed * 1000)))
                video_frame = av.VideoFrame.from_ndarray(payload, format="yuv420p")
                video_frame.pts = pts
                video_frame.time_base = _MILLISECONDS
                for packet in stream.encode(video_frame):
                    container.mux(packet)
                last_pts = pts
                written += 1
            if stream is not None:
                for packet in stream.encode():
                    container.mux(packet)
        except RecordingWriteFailed as exc:
            logger.error("Recording to %s failed: %s", destination, exc)
            error = exc
        except (av.error.FFmpegError, ValueError, OSError) as exc:
            logger.exception("Encoding failed for %s", destination)
            error = RecordingWriteFailed(f"Encoding failed: {exc}")
            error.__cause__ = exc
        finally:
            try:
                container.close()
            except (av.error.FFmpegError, ValueError, OSError) as exc:
                logger.warning("Failed to close %s: %s", destination, exc)
                if error is None and written:
                    error = RecordingWriteFailed(f"Failed to finalise {destination.name}: {exc}")
            with self._lock:
                self._active = False
                self._queue = None

        if written == 0 and not isinstance(error, RecordingWriteFailed):
            error = RecordingWriteFailed("No frames were recorded")
        logger.debug("Media writer finished %s (%d frames, error=%s)", destination, written, error)
        try:
            on_finish(destination, error)
        except Exception:
            logger.exception("Recording finish callback failed for %s", destination)

    def _add_stream(self, container: Any, width: int, height: int) -> Any:
        for codec in _codec_candidates(self.codec):
            try:
                stream = container.add_stream(codec, rate=self.fps)
            except (av.error.FFmpegError, ValueError):
                continue
            stream.width = width
            stream.height = height
            stream.pix_fmt = "yuv420p"
            _apply_stream_timing(stream, _MILLISECONDS)
            return stream
        raise RecordingWriteFailed(f"No compatible encoder available for {self.codec!r}")


def probe_duration(path: Path) -> float:
    """Return the duration of the media file at ``path`` in seconds."""

    try:
        with av.open(Path(path).as_posix()) as container:
            if container.duration is not None:
                return float(container.duration) / av.time_base
            for stream in container.streams.video:
                if stream.duration is not None and stream.time_base is not None:
                    return float(stream.duration * stream.time_base)
    except (av.error.FFmpegError, OSError, ValueError) as exc:
        raise DurationLoadFailed(f"Unable to load duration of {path}: {exc}") from exc
    raise DurationLoadFailed(f"{path} does not report a duration")


__all__ = [
    "AVMediaWriter",
    "DEFAULT_MAX_DURATION_SECONDS",
    "FinishCallback",
    "MediaWriter",
    "probe_duration",
]
