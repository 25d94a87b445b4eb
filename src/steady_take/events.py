"""Observer interface for capture, analysis and recording notifications."""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .lanes import SerialLane

if TYPE_CHECKING:  # pragma: no cover - import cycles
    from .analysis import FrameScore
    from .metadata import RecordingMetadataRecord

logger = logging.getLogger(__name__)


class CaptureObserver:
    """Base class with no-op hooks; override only the ones you need."""

    def on_analysis_updated(self, score: "FrameScore") -> None:
        pass

    def on_condition_changed(self, is_met: bool) -> None:
        pass

    def on_recording_changed(self, is_recording: bool) -> None:
        pass

    def on_recording_finished(self, output: Path) -> None:
        pass

    def on_recording_failed(self, error: BaseException) -> None:
        pass

    def on_metadata_saved(self, path: Path, record: "RecordingMetadataRecord") -> None:
        pass


_HOOKS = frozenset(
    {
        "on_analysis_updated",
        "on_condition_changed",
        "on_recording_changed",
        "on_recording_finished",
        "on_recording_failed",
        "on_metadata_saved",
    }
)


class ObserverRegistry:
    """Fan notifications out to subscribers on the completion lane.

    Delivery order matches emission order. A subscriber that raises is logged
    and the remaining subscribers still receive the notification.
    """

    def __init__(self, lane: SerialLane) -> None:
        self._lane = lane
        self._lock = threading.Lock()
        self._observers: list[Any] = []

    @property
    def lane(self) -> SerialLane:
        return self._lane

    def subscribe(self, observer: Any) -> None:
        with self._lock:
            if observer not in self._observers:
                self._observers.append(observer)

    def unsubscribe(self, observer: Any) -> None:
        with self._lock:
            try:
                self._observers.remove(observer)
            except ValueError:
                pass

    def emit(self, hook: str, *args: Any) -> None:
        if hook not in _HOOKS:
            raise ValueError(f"Unknown observer hook: {hook}")
        with self._lock:
            observers = tuple(self._observers)
        if not observers:
            return
        self._lane.submit(self._deliver, observers, hook, args)

    @staticmethod
    def _deliver(observers: tuple[Any, ...], hook: str, args: tuple[Any, ...]) -> None:
        for observer in observers:
            callback = getattr(observer, hook, None)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception:
                logger.exception("Observer %r failed handling %s", observer, hook)


__all__ = ["CaptureObserver", "ObserverRegistry"]
