"""Capture session controller tying devices, analysis and recording together."""
from __future__ import annotations

import concurrent.futures
import enum
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable

from .analysis import AnalysisThrottle, FrameAnalyzer, FrameSampler, FrameScore
from .camera import CameraDeviceProvider, CaptureDevice
from .config import CaptureSettings
from .errors import (
    CameraError,
    CaptureError,
    DeviceAttachFailed,
    NoCameraAvailable,
    PermissionsDenied,
    summarise_exception,
)
from .events import ObserverRegistry
from .frames import FrameBuffer
from .lanes import SerialLane
from .media import AVMediaWriter, MediaWriter, probe_duration
from .metadata import MetadataPersister, RecordingMetadataRecord
from .metrics import LaneBoundMetrics, RecordingMetrics
from .permissions import PermissionProvider, StaticPermissionProvider, resolve_permissions
from .recording import RecordingState, RecordingStateMachine
from .store import VideoStore

logger = logging.getLogger(__name__)

# Admitted frames allowed to wait for the analysis lane when late frames are discarded.
MAX_ANALYSIS_BACKLOG = 2


class SessionState(str, enum.Enum):
    IDLE = "idle"
    CONFIGURING = "configuring"
    RUNNING = "running"
    RECORDING = "recording"
    STOPPING = "stopping"


class _ConfigurationCancelled(Exception):
    """Raised internally when a stop request overtakes configuration."""


class SessionController:
    """Own the capture session and route frames to recording and analysis.

    Lifecycle work runs on the session lane, analysis and every metrics
    mutation on the analysis lane, and observer callbacks on the completion
    lane. Public methods never block on device work; they return futures.
    """

    def __init__(
        self,
        *,
        settings: CaptureSettings | None = None,
        device_provider: Any | None = None,
        permissions: PermissionProvider | None = None,
        writer: MediaWriter | None = None,
        store: VideoStore | None = None,
        analyzer: FrameAnalyzer | None = None,
        duration_loader: Callable[[Path], float] = probe_duration,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or CaptureSettings()
        self._session_lane = SerialLane("session")
        self._analysis_lane = SerialLane("analysis")
        self._completion_lane = SerialLane("completion")
        self.observers = ObserverRegistry(self._completion_lane)

        self._owns_provider = device_provider is None
        self._device_provider = device_provider or self._build_provider(self._settings)
        self._permissions = permissions or StaticPermissionProvider()
        self._writer = writer or AVMediaWriter(
            max_duration_seconds=self._settings.max_duration_seconds,
            fps=self._settings.capture_fps,
        )
        self.store = store or VideoStore()
        self._analyzer: FrameAnalyzer = analyzer or FrameSampler(stride=self._settings.sample_stride)
        self._throttle = AnalysisThrottle(self._settings.analysis_target_fps)
        self._criteria = self._settings.criteria()
        self._metrics = LaneBoundMetrics(self._analysis_lane, clock=clock)
        self._persister = MetadataPersister(
            sidecar_for=self.store.sidecar_path,
            duration_loader=duration_loader,
            on_saved=self._metadata_saved,
        )
        self._recording = RecordingStateMachine(
            self._writer,
            self._metrics,
            self.observers,
            on_completed=self._persist_metadata,
            dispatch=self._session_lane.submit,
        )

        self._lock = threading.Lock()
        self._state = SessionState.IDLE
        self._generation = 0
        self._configured = False
        self._reconfigure_pending = False
        self._device: CaptureDevice | None = None
        self._audio_enabled = False

        self._analysis_backlog = 0
        self._dropped_frames = 0
        self._analyzed_frames = 0
        self._latest_score: FrameScore | None = None
        self._last_condition: bool | None = None
        self._closed = False

    @staticmethod
    def _build_provider(settings: CaptureSettings) -> CameraDeviceProvider:
        return CameraDeviceProvider(
            settings.camera,
            resolution=settings.resolution.as_tuple(),
            fps=settings.capture_fps,
        )

    # ------------------------------------------------------------------
    # Introspection
    @property
    def state(self) -> SessionState:
        with self._lock:
            state = self._state
        if state is SessionState.RUNNING:
            recording = self._recording.state
            if recording is RecordingState.RECORDING:
                return SessionState.RECORDING
            if recording is RecordingState.STOPPING:
                return SessionState.STOPPING
        return state

    @property
    def settings(self) -> CaptureSettings:
        return self._settings

    @property
    def latest_score(self) -> FrameScore | None:
        return self._latest_score

    @property
    def dropped_frames(self) -> int:
        with self._lock:
            return self._dropped_frames

    @property
    def analyzed_frames(self) -> int:
        return self._analyzed_frames

    @property
    def recording(self) -> RecordingStateMachine:
        return self._recording

    @property
    def audio_enabled(self) -> bool:
        return self._audio_enabled

    def status(self) -> dict[str, Any]:
        score = self._latest_score
        destination = self._recording.destination
        device = self._device
        return {
            "state": self.state.value,
            "recording": self._recording.is_recording,
            "destination": destination.name if destination is not None else None,
            "camera": device.name if device is not None else None,
            "audio": self._audio_enabled,
            "analysis": score.to_dict() if score is not None else None,
            "condition_met": self._last_condition,
            "analyzed_frames": self._analyzed_frames,
            "dropped_frames": self.dropped_frames,
        }

    # ------------------------------------------------------------------
    # Session lifecycle
    def start_session(self) -> "concurrent.futures.Future[SessionState]":
        with self._lock:
            token = self._generation
        return self._session_lane.submit(self._start_session, token)

    def stop_session(self) -> "concurrent.futures.Future[SessionState]":
        with self._lock:
            self._generation += 1
        return self._session_lane.submit(self._stop_session)

    def _set_state(self, state: SessionState) -> None:
        with self._lock:
            self._state = state

    def _check_cancelled(self, token: int) -> None:
        with self._lock:
            if self._generation != token:
                raise _ConfigurationCancelled()

    def _start_session(self, token: int) -> SessionState:
        with self._lock:
            if self._state is SessionState.RUNNING:
                return SessionState.RUNNING
        try:
            self._check_cancelled(token)
        except _ConfigurationCancelled:
            logger.info("Session start cancelled before configuration")
            return SessionState.IDLE

        camera_ok, microphone_ok = resolve_permissions(self._permissions)
        if not camera_ok:
            logger.error("Camera permission denied")
            raise PermissionsDenied("Camera permission was denied")

        self._set_state(SessionState.CONFIGURING)
        try:
            if not self._configured:
                self._configure(microphone_ok, token)
            self._check_cancelled(token)
            self._analysis_lane.submit(self._reset_analysis).result()
            self._check_cancelled(token)
            if self._device is None:
                raise NoCameraAvailable("No compatible camera was found")
            self._device.start(self.on_frame)
        except _ConfigurationCancelled:
            logger.info("Session configuration cancelled by stop request")
            self._teardown()
            self._set_state(SessionState.IDLE)
            return SessionState.IDLE
        except Exception:
            logger.exception("Session configuration failed")
            self._teardown()
            self._set_state(SessionState.IDLE)
            raise
        self._set_state(SessionState.RUNNING)
        logger.info("Capture session running (%s)", self._device.name)
        return SessionState.RUNNING

    def _configure(self, microphone_ok: bool, token: int) -> None:
        device = self._device_provider.video_device()
        if device is None:
            raise NoCameraAvailable("No compatible camera was found")
        self._device = device
        self._check_cancelled(token)
        try:
            device.open()
        except DeviceAttachFailed:
            raise
        except (CameraError, OSError) as exc:
            raise DeviceAttachFailed(
                f"Unable to attach {device.name} camera: {summarise_exception(exc)}"
            ) from exc
        self._check_cancelled(token)

        self._audio_enabled = False
        if microphone_ok:
            audio = self._device_provider.audio_device()
            if audio is None:
                logger.info("No audio source available; recording video only")
            else:
                try:
                    self._writer.attach_audio(audio)
                except CaptureError as exc:
                    logger.warning("Audio input unavailable: %s", exc)
                else:
                    self._audio_enabled = True
        else:
            logger.info("Skipping audio input (microphone not authorised)")

        self._writer.configure(
            max_duration_seconds=self._settings.max_duration_seconds,
            fps=self._settings.capture_fps,
        )
        self._configured = True

    def _teardown(self) -> None:
        device, self._device = self._device, None
        self._configured = False
        self._audio_enabled = False
        if device is None:
            return
        try:
            device.close()
        except Exception:
            logger.exception("Failed to release %s camera", device.name)

    def _stop_session(self) -> SessionState:
        with self._lock:
            state = self._state
        if state is SessionState.IDLE and (self._device is None or not self._device.is_running):
            return SessionState.IDLE
        if self._recording.state is RecordingState.RECORDING:
            self._recording.stop()
        if self._device is not None:
            self._device.stop()
        if self._reconfigure_pending:
            self._reconfigure_pending = False
            self._teardown()
        self._set_state(SessionState.IDLE)
        logger.info("Capture session stopped")
        return SessionState.IDLE

    # ------------------------------------------------------------------
    # Frame path
    def on_frame(self, frame: FrameBuffer) -> None:
        """Capture callback; safe to call from any thread."""

        if self._recording.state is RecordingState.RECORDING:
            self._writer.append(frame)
        with self._lock:
            # Frames the throttle would reject never reach the lane.
            if not self._throttle.is_due(frame.timestamp):
                return
            if (
                self._settings.discard_late_frames
                and self._analysis_backlog >= MAX_ANALYSIS_BACKLOG
            ):
                self._dropped_frames += 1
                return
            self._throttle.should_analyze(frame.timestamp)
            self._analysis_backlog += 1
        self._analysis_lane.submit(self._analyse, frame)

    def _reset_analysis(self) -> None:
        self._analyzer.reset()
        with self._lock:
            self._throttle.reset()
        self._last_condition = None

    def _analyse(self, frame: FrameBuffer) -> None:
        with self._lock:
            self._analysis_backlog -= 1
        try:
            score = self._analyzer.analyze(frame)
        except Exception:
            logger.exception("Frame analysis failed for %r", frame)
            return
        if score is None:
            return
        self._analyzed_frames += 1
        self._latest_score = score
        met = self._criteria.is_met(score)
        self._metrics.set_condition(met, frame.timestamp)
        self.observers.emit("on_analysis_updated", score)
        if met != self._last_condition:
            self._last_condition = met
            self.observers.emit("on_condition_changed", met)

    def report_condition(self, is_met: bool) -> None:
        """Feed an externally computed verdict into the recording metrics."""

        self._metrics.set_condition(bool(is_met))

    # ------------------------------------------------------------------
    # Recording
    def start_recording(self, destination: Path | None = None) -> "concurrent.futures.Future[Path | None]":
        return self._session_lane.submit(self._start_recording, destination)

    def _start_recording(self, destination: Path | None) -> Path | None:
        with self._lock:
            state = self._state
        if state is not SessionState.RUNNING:
            logger.info("Cannot record while session is %s", state.value)
            return None
        path = Path(destination) if destination is not None else self.store.new_recording_path()
        return path if self._recording.start(path) else None

    def stop_recording(self) -> "concurrent.futures.Future[bool]":
        return self._session_lane.submit(self._recording.stop)

    def _persist_metadata(
        self, output: Path, metrics: "concurrent.futures.Future[RecordingMetrics]"
    ) -> None:
        self._persister.persist(output, metrics)

    def _metadata_saved(self, path: Path, record: RecordingMetadataRecord) -> None:
        self.observers.emit("on_metadata_saved", path, record)

    # ------------------------------------------------------------------
    # Settings
    def apply_settings(self, settings: CaptureSettings) -> "concurrent.futures.Future[CaptureSettings]":
        return self._session_lane.submit(self._apply_settings, settings)

    def _apply_settings(self, settings: CaptureSettings) -> CaptureSettings:
        previous = self._settings
        self._settings = settings
        self._writer.configure(
            max_duration_seconds=settings.max_duration_seconds, fps=settings.capture_fps
        )
        self._analysis_lane.submit(self._apply_analysis_settings, settings).result()

        device_changed = (
            previous.camera != settings.camera
            or previous.resolution != settings.resolution
            or previous.capture_fps != settings.capture_fps
        )
        if device_changed and self._owns_provider:
            self._device_provider = self._build_provider(settings)
            with self._lock:
                running = self._state is SessionState.RUNNING
            if running:
                logger.info("Camera settings changed; applying on next session start")
                self._reconfigure_pending = True
            else:
                self._teardown()
        return settings

    def _apply_analysis_settings(self, settings: CaptureSettings) -> None:
        with self._lock:
            self._throttle.target_fps = settings.analysis_target_fps
        self._criteria = settings.criteria()
        configure = getattr(self._analyzer, "configure", None)
        if callable(configure):
            configure(stride=settings.sample_stride)

    # ------------------------------------------------------------------
    def drain(self, timeout: float | None = 10.0) -> None:
        """Wait until queued lifecycle, analysis, notification and metadata work is done."""

        for _ in range(2):
            self._session_lane.flush(timeout)
            self._analysis_lane.flush(timeout)
            self._persister.flush(timeout)
            self._completion_lane.flush(timeout)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.stop_session().result(timeout=10.0)
        except Exception:
            logger.exception("Failed to stop session during shutdown")
        self._writer.close()
        self.drain()
        self._teardown()
        self._persister.close()
        self._session_lane.shutdown()
        self._analysis_lane.shutdown()
        self._completion_lane.shutdown()


__all__ = ["MAX_ANALYSIS_BACKLOG", "SessionController", "SessionState"]
