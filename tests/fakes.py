"""Hand-driven stand-ins for capture devices, writers and observers."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import numpy as np

from steady_take.camera import CaptureDevice
from steady_take.errors import DeviceAttachFailed
from steady_take.events import CaptureObserver
from steady_take.frames import FrameBuffer
from steady_take.media import FinishCallback, MediaWriter


def luma_frame(value: int, timestamp: float, size: tuple[int, int] = (16, 16)) -> FrameBuffer:
    height, width = size
    return FrameBuffer.from_luma(np.full((height, width), value, dtype=np.uint8), timestamp)


class ManualCaptureDevice(CaptureDevice):
    """Capture device driven explicitly by the test through :meth:`push`."""

    name = "manual"

    def __init__(self, *, fail_open: bool = False) -> None:
        super().__init__()
        self.fail_open = fail_open
        self.opened = 0
        self.closed = 0
        self.running = False

    def open(self) -> None:
        self.opened += 1
        if self.fail_open:
            raise DeviceAttachFailed("device busy")

    def _read_frame(self) -> FrameBuffer | None:  # pragma: no cover - not threaded in tests
        return None

    @property
    def is_running(self) -> bool:
        return self.running

    def start(self, on_frame) -> None:
        self._callback = on_frame
        self.running = True

    def stop(self) -> None:
        self.running = False

    def _release(self) -> None:
        self.closed += 1

    def push(self, frame: FrameBuffer) -> None:
        assert self._callback is not None
        self._callback(frame)


class ManualProvider:
    def __init__(self, device: CaptureDevice | None = None, audio: Any | None = None) -> None:
        self.device = device
        self.audio = audio
        self.video_requests = 0

    def video_device(self) -> CaptureDevice | None:
        self.video_requests += 1
        return self.device

    def audio_device(self) -> Any | None:
        return self.audio


class FakeWriter(MediaWriter):
    """Media writer that records calls and finishes on demand."""

    def __init__(
        self,
        *,
        auto_finish: bool = True,
        finish_error: BaseException | None = None,
        start_error: BaseException | None = None,
        accept_audio: bool = False,
    ) -> None:
        super().__init__()
        self.auto_finish = auto_finish
        self.finish_error = finish_error
        self.start_error = start_error
        self.accept_audio = accept_audio
        self.audio_sources: list[Any] = []
        self.frames: list[FrameBuffer] = []
        self.started: list[Path] = []
        self.fps: int | None = None
        self._destination: Path | None = None
        self._on_finish: FinishCallback | None = None
        self._lock = threading.Lock()

    @property
    def is_recording(self) -> bool:
        return self._destination is not None

    def configure(
        self, *, max_duration_seconds: float | None = None, fps: int | None = None
    ) -> None:
        super().configure(max_duration_seconds=max_duration_seconds, fps=fps)
        if fps is not None:
            self.fps = fps

    def attach_audio(self, source: Any) -> None:
        if not self.accept_audio:
            super().attach_audio(source)
        self.audio_sources.append(source)

    def start(self, destination: Path, on_finish: FinishCallback) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started.append(destination)
        self._destination = destination
        self._on_finish = on_finish

    def append(self, frame: FrameBuffer) -> None:
        with self._lock:
            self.frames.append(frame)

    def stop(self) -> None:
        if self.auto_finish:
            self.complete(self.finish_error)

    def complete(self, error: BaseException | None = None) -> None:
        destination, callback = self._destination, self._on_finish
        self._destination = None
        self._on_finish = None
        if destination is not None and callback is not None:
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(b"media")
            callback(destination, error)


class RecordingObserver(CaptureObserver):
    def __init__(self) -> None:
        self.events: list[tuple[str, tuple[Any, ...]]] = []

    def _add(self, name: str, *args: Any) -> None:
        self.events.append((name, args))

    def on_analysis_updated(self, score) -> None:
        self._add("analysis_updated", score)

    def on_condition_changed(self, is_met: bool) -> None:
        self._add("condition_changed", is_met)

    def on_recording_changed(self, is_recording: bool) -> None:
        self._add("recording_changed", is_recording)

    def on_recording_finished(self, output: Path) -> None:
        self._add("recording_finished", output)

    def on_recording_failed(self, error: BaseException) -> None:
        self._add("recording_failed", error)

    def on_metadata_saved(self, path: Path, record) -> None:
        self._add("metadata_saved", path, record)

    def names(self, *, include_analysis: bool = False) -> list[str]:
        return [
            name
            for name, _ in self.events
            if include_analysis or name not in {"analysis_updated", "condition_changed"}
        ]

    def of(self, name: str) -> list[tuple[Any, ...]]:
        return [args for event, args in self.events if event == name]
