"""Recording lifecycle: start, stop and completion of a single take."""
from __future__ import annotations

import concurrent.futures
import enum
import logging
import threading
from pathlib import Path
from typing import Any, Callable

from .errors import CaptureError, MaximumDurationReached, RecordingWriteFailed
from .events import ObserverRegistry
from .media import MediaWriter
from .metrics import LaneBoundMetrics, RecordingMetrics

logger = logging.getLogger(__name__)

CompletionHook = Callable[[Path, "concurrent.futures.Future[RecordingMetrics]"], Any]
Dispatcher = Callable[..., Any]


class RecordingState(str, enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPING = "stopping"


def _inline(fn: Callable[..., Any], *args: Any) -> Any:
    return fn(*args)


class RecordingStateMachine:
    """Guard the recording lifecycle so at most one take is active.

    ``start`` and ``stop`` are rejected (return ``False``) unless the machine is
    in the matching state; nothing is queued. The writer reports completion
    through a callback which is routed through ``dispatch`` (the session lane in
    normal operation) before :meth:`finish` runs.
    """

    def __init__(
        self,
        writer: MediaWriter,
        metrics: LaneBoundMetrics,
        observers: ObserverRegistry,
        *,
        on_completed: CompletionHook | None = None,
        dispatch: Dispatcher | None = None,
    ) -> None:
        self._writer = writer
        self._metrics = metrics
        self._observers = observers
        self._on_completed = on_completed
        self._dispatch = dispatch or _inline
        self._lock = threading.RLock()
        self._state = RecordingState.IDLE
        self._destination: Path | None = None

    # ------------------------------------------------------------------
    @property
    def state(self) -> RecordingState:
        with self._lock:
            return self._state

    @property
    def is_recording(self) -> bool:
        return self.state is not RecordingState.IDLE

    @property
    def destination(self) -> Path | None:
        with self._lock:
            return self._destination

    @property
    def writer(self) -> MediaWriter:
        return self._writer

    # ------------------------------------------------------------------
    def start(self, destination: Path) -> bool:
        destination = Path(destination)
        with self._lock:
            if self._state is not RecordingState.IDLE:
                logger.info("Ignoring start request while %s", self._state.value)
                return False
            self._state = RecordingState.RECORDING
            self._destination = destination
            self._metrics.begin()
            try:
                self._writer.start(destination, self._writer_finished)
            except Exception as exc:
                logger.exception("Media writer refused to start recording to %s", destination)
                self._metrics.finalize()
                self._state = RecordingState.IDLE
                self._destination = None
                error = exc if isinstance(exc, RecordingWriteFailed) else RecordingWriteFailed(
                    f"Unable to start recording: {exc}"
                )
                if error is not exc:
                    error.__cause__ = exc
                self._observers.emit("on_recording_failed", error)
                return False
            logger.info("Recording started: %s", destination)
            self._observers.emit("on_recording_changed", True)
            return True

    def stop(self) -> bool:
        with self._lock:
            if self._state is not RecordingState.RECORDING:
                logger.info("Ignoring stop request while %s", self._state.value)
                return False
            self._state = RecordingState.STOPPING
            destination = self._destination
            try:
                self._writer.stop()
            except Exception as exc:
                logger.exception("Media writer failed to stop cleanly")
                error = RecordingWriteFailed(f"Unable to stop recording: {exc}")
                error.__cause__ = exc
                self.finish(destination, error)
            return True

    def _writer_finished(self, output: Path, error: BaseException | None) -> None:
        self._dispatch(self.finish, output, error)

    def finish(self, output: Path | None, error: BaseException | None = None) -> None:
        with self._lock:
            if self._state is RecordingState.IDLE:
                logger.debug("Ignoring completion for %s while idle", output)
                return
            if output is None:
                output = self._destination
            metrics_future = self._metrics.finalize()
            self._state = RecordingState.IDLE
            self._destination = None

            self._observers.emit("on_recording_changed", False)
            if error is None or isinstance(error, MaximumDurationReached):
                if error is not None:
                    logger.info("Recording reached maximum duration: %s", output)
                logger.info("Recording finished: %s", output)
                self._observers.emit("on_recording_finished", output)
            else:
                if not isinstance(error, CaptureError):
                    wrapped = RecordingWriteFailed(str(error) or error.__class__.__name__)
                    wrapped.__cause__ = error
                    error = wrapped
                logger.error("Recording failed: %s", error)
                self._observers.emit("on_recording_failed", error)

            if self._on_completed is not None and output is not None:
                try:
                    self._on_completed(output, metrics_future)
                except Exception:
                    logger.exception("Recording completion hook failed for %s", output)


__all__ = ["RecordingState", "RecordingStateMachine"]
