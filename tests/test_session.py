"""Session controller lifecycle, frame routing and recording metadata."""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import pytest

from fakes import FakeWriter, ManualCaptureDevice, ManualProvider, RecordingObserver, luma_frame
from steady_take.analysis import FrameSampler
from steady_take.config import CaptureSettings
from steady_take.errors import DeviceAttachFailed, NoCameraAvailable, PermissionsDenied
from steady_take.permissions import StaticPermissionProvider
from steady_take.session import MAX_ANALYSIS_BACKLOG, SessionController, SessionState
from steady_take.store import VideoStore


class _Clock:
    def __init__(self, value: float = 0.0) -> None:
        self.value = value

    def __call__(self) -> float:
        return self.value


class _SpyAnalyzer:
    def __init__(self) -> None:
        self.inner = FrameSampler()
        self.timestamps: list[float] = []
        self.resets = 0

    def analyze(self, frame):
        self.timestamps.append(frame.timestamp)
        return self.inner.analyze(frame)

    def reset(self) -> None:
        self.resets += 1
        self.inner.reset()


class _BlockingAnalyzer(_SpyAnalyzer):
    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def analyze(self, frame):
        self.entered.set()
        self.release.wait(5)
        return super().analyze(frame)


class _SlowAnalyzer(_SpyAnalyzer):
    def analyze(self, frame):
        time.sleep(0.05)
        return super().analyze(frame)


class _BlockingDevice(ManualCaptureDevice):
    def __init__(self) -> None:
        super().__init__()
        self.opening = threading.Event()
        self.release = threading.Event()

    def open(self) -> None:
        self.opening.set()
        self.release.wait(5)
        super().open()


@pytest.fixture
def build(tmp_path: Path):
    controllers: list[SessionController] = []

    def factory(**overrides) -> tuple[SessionController, RecordingObserver]:
        overrides.setdefault("settings", CaptureSettings(discard_late_frames=False))
        overrides.setdefault("device_provider", ManualProvider(ManualCaptureDevice()))
        overrides.setdefault("writer", FakeWriter())
        overrides.setdefault("store", VideoStore(tmp_path / "recordings"))
        overrides.setdefault("duration_loader", lambda path: 5.0)
        controller = SessionController(**overrides)
        observer = RecordingObserver()
        controller.observers.subscribe(observer)
        controllers.append(controller)
        return controller, observer

    yield factory
    for controller in controllers:
        controller.close()


def test_camera_permission_is_mandatory(build) -> None:
    """Starting without camera access fails before any device is requested."""

    provider = ManualProvider(ManualCaptureDevice())
    controller, _ = build(
        device_provider=provider,
        permissions=StaticPermissionProvider({"video": "denied"}),
    )
    with pytest.raises(PermissionsDenied):
        controller.start_session().result(timeout=5)
    assert controller.state is SessionState.IDLE
    assert provider.video_requests == 0


def test_undetermined_permissions_are_requested(build) -> None:
    permissions = StaticPermissionProvider(
        {"video": "not_determined", "audio": "not_determined"}, grants={"video": True}
    )
    provider = ManualProvider(ManualCaptureDevice(), audio=object())
    controller, _ = build(
        device_provider=provider,
        permissions=permissions,
        writer=FakeWriter(accept_audio=True),
    )
    assert controller.start_session().result(timeout=5) is SessionState.RUNNING
    assert [media.value for media in permissions.requests] == ["video", "audio"]
    assert controller.audio_enabled is False


def test_missing_camera_fails_configuration(build) -> None:
    controller, _ = build(device_provider=ManualProvider(None))
    with pytest.raises(NoCameraAvailable):
        controller.start_session().result(timeout=5)
    assert controller.state is SessionState.IDLE


def test_attach_failure_tears_down_and_can_retry(build) -> None:
    device = ManualCaptureDevice(fail_open=True)
    controller, _ = build(device_provider=ManualProvider(device))
    with pytest.raises(DeviceAttachFailed):
        controller.start_session().result(timeout=5)
    assert controller.state is SessionState.IDLE
    assert device.closed == 1
    assert not device.running

    device.fail_open = False
    assert controller.start_session().result(timeout=5) is SessionState.RUNNING
    assert device.opened == 2


def test_microphone_is_optional(build) -> None:
    provider = ManualProvider(ManualCaptureDevice(), audio=object())
    refusing, _ = build(device_provider=provider, writer=FakeWriter(accept_audio=False))
    assert refusing.start_session().result(timeout=5) is SessionState.RUNNING
    assert refusing.audio_enabled is False

    writer = FakeWriter(accept_audio=True)
    accepting, _ = build(
        device_provider=ManualProvider(ManualCaptureDevice(), audio="mic"), writer=writer
    )
    assert accepting.start_session().result(timeout=5) is SessionState.RUNNING
    assert accepting.audio_enabled is True
    assert writer.audio_sources == ["mic"]


def test_start_and_stop_are_idempotent(build) -> None:
    device = ManualCaptureDevice()
    controller, _ = build(device_provider=ManualProvider(device))

    assert controller.start_session().result(timeout=5) is SessionState.RUNNING
    assert controller.start_session().result(timeout=5) is SessionState.RUNNING
    assert device.opened == 1

    assert controller.stop_session().result(timeout=5) is SessionState.IDLE
    assert controller.stop_session().result(timeout=5) is SessionState.IDLE
    assert not device.running

    # Configuration happens once; restarting only resumes delivery.
    assert controller.start_session().result(timeout=5) is SessionState.RUNNING
    assert device.opened == 1
    assert device.running


def test_stop_during_configuration_aborts_start(build) -> None:
    """A stop issued while the device is opening cancels the pending start."""

    device = _BlockingDevice()
    controller, _ = build(device_provider=ManualProvider(device))

    started = controller.start_session()
    assert device.opening.wait(5)
    assert controller.state is SessionState.CONFIGURING
    stopped = controller.stop_session()
    device.release.set()

    assert started.result(timeout=5) is SessionState.IDLE
    assert stopped.result(timeout=5) is SessionState.IDLE
    assert controller.state is SessionState.IDLE
    assert device.closed == 1
    assert not device.running


def test_analysis_is_throttled_to_target_rate(build) -> None:
    """Only frames spaced by the analysis interval are scored."""

    device = ManualCaptureDevice()
    analyzer = _SpyAnalyzer()
    controller, observer = build(device_provider=ManualProvider(device), analyzer=analyzer)
    controller.start_session().result(timeout=5)

    for timestamp in (0.0, 0.03, 0.07, 0.10):
        device.push(luma_frame(128, timestamp))
    controller.drain()

    assert analyzer.timestamps == [0.0, 0.07]
    assert analyzer.resets == 1
    scores = [args[0] for args in observer.of("analysis_updated")]
    assert [score.timestamp for score in scores] == [0.0, 0.07]
    assert observer.of("condition_changed") == [(True,)]
    assert controller.latest_score is not None
    assert controller.analyzed_frames == 2


def test_default_settings_keep_frames_the_throttle_accepts(build) -> None:
    """Late-frame discarding must not starve the throttle of due frames."""

    device = ManualCaptureDevice()
    analyzer = _SlowAnalyzer()
    controller, _ = build(
        settings=CaptureSettings(),
        device_provider=ManualProvider(device),
        analyzer=analyzer,
    )
    controller.start_session().result(timeout=5)

    for timestamp in (0.0, 0.03, 0.07, 0.10):
        device.push(luma_frame(128, timestamp))
    controller.drain()

    assert analyzer.timestamps == [0.0, 0.07]
    assert controller.dropped_frames == 0


def test_late_frames_are_discarded_while_analysis_is_busy(build) -> None:
    device = ManualCaptureDevice()
    analyzer = _BlockingAnalyzer()
    controller, _ = build(
        settings=CaptureSettings(discard_late_frames=True),
        device_provider=ManualProvider(device),
        analyzer=analyzer,
    )
    controller.start_session().result(timeout=5)

    device.push(luma_frame(100, 0.0))
    assert analyzer.entered.wait(5)
    # Throttled frames are not counted as dropped.
    device.push(luma_frame(100, 0.01))
    for second in range(1, MAX_ANALYSIS_BACKLOG + 3):
        device.push(luma_frame(100, float(second)))
    analyzer.release.set()
    controller.drain()

    assert analyzer.timestamps == [float(second) for second in range(MAX_ANALYSIS_BACKLOG + 1)]
    assert controller.dropped_frames == 2


def test_recording_produces_sidecar_with_condition_time(build, tmp_path: Path) -> None:
    """A full take writes a sidecar with the time spent in the accepted state."""

    device = ManualCaptureDevice()
    clock = _Clock(6.0)
    writer = FakeWriter()
    controller, observer = build(device_provider=ManualProvider(device), writer=writer, clock=clock)
    controller.start_session().result(timeout=5)

    target = tmp_path / "take.mp4"
    assert controller.start_recording(target).result(timeout=5) == target
    assert controller.state is SessionState.RECORDING
    controller.drain()

    # bright+still, dark, bright but moving, bright+still
    for value, timestamp in ((128, 1.0), (10, 2.0), (128, 3.0), (128, 4.0)):
        device.push(luma_frame(value, timestamp))
    controller.drain()

    assert controller.stop_recording().result(timeout=5) is True
    controller.drain()

    assert controller.state is SessionState.RUNNING
    assert len(writer.frames) == 4
    payload = json.loads((tmp_path / "take.json").read_text())
    assert payload == {
        "video_filename": "take.mp4",
        "recording_duration_seconds": 5.0,
        "was_condition_met": True,
        "time_in_green_state_seconds": pytest.approx(3.0),
    }
    assert observer.names() == [
        "recording_changed",
        "recording_changed",
        "recording_finished",
        "metadata_saved",
    ]
    saved_path, record = observer.of("metadata_saved")[0]
    assert saved_path == tmp_path / "take.json"
    assert record.condition_accumulated_seconds == pytest.approx(3.0)


def test_external_condition_reports_feed_metrics(build, tmp_path: Path) -> None:
    clock = _Clock(10.0)
    controller, _ = build(clock=clock)
    controller.start_session().result(timeout=5)
    target = tmp_path / "external.mp4"
    controller.start_recording(target).result(timeout=5)
    controller.drain()

    controller.report_condition(True)
    controller.drain()
    clock.value = 13.0
    controller.stop_recording().result(timeout=5)
    controller.drain()

    payload = json.loads((tmp_path / "external.json").read_text())
    assert payload["was_condition_met"] is True
    assert payload["time_in_green_state_seconds"] == pytest.approx(3.0)


def test_recording_requires_running_session(build) -> None:
    controller, observer = build()
    assert controller.start_recording().result(timeout=5) is None
    assert controller.stop_recording().result(timeout=5) is False
    controller.drain()
    assert observer.events == []


def test_default_destination_comes_from_store(build, tmp_path: Path) -> None:
    controller, _ = build()
    controller.start_session().result(timeout=5)
    output = controller.start_recording().result(timeout=5)
    assert output is not None
    assert output.parent == tmp_path / "recordings"
    assert output.name.startswith("VID_")
    assert output.suffix == ".mp4"


def test_stopping_session_stops_active_recording(build, tmp_path: Path) -> None:
    controller, observer = build()
    controller.start_session().result(timeout=5)
    controller.start_recording(tmp_path / "cut.mp4").result(timeout=5)
    controller.stop_session().result(timeout=5)
    controller.drain()

    assert controller.state is SessionState.IDLE
    assert not controller.recording.is_recording
    assert observer.of("recording_finished") == [(tmp_path / "cut.mp4",)]


def test_settings_update_retunes_throttle(build) -> None:
    device = ManualCaptureDevice()
    analyzer = _SpyAnalyzer()
    controller, _ = build(device_provider=ManualProvider(device), analyzer=analyzer)
    controller.start_session().result(timeout=5)

    updated = CaptureSettings(analysis_target_fps=1.0, discard_late_frames=False)
    controller.apply_settings(updated).result(timeout=5)
    for timestamp in (0.0, 0.5, 1.0):
        device.push(luma_frame(90, timestamp))
    controller.drain()

    assert analyzer.timestamps == [0.0, 1.0]
    assert controller.settings == updated


def test_capture_rate_reaches_the_writer(build) -> None:
    writer = FakeWriter()
    controller, _ = build(writer=writer)
    controller.start_session().result(timeout=5)
    assert writer.fps == 30

    controller.apply_settings(CaptureSettings(capture_fps=24, max_duration_seconds=12)).result(timeout=5)
    assert writer.fps == 24
    assert writer.max_duration_seconds == 12.0
