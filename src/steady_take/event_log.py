"""Persistent record of session and recording events."""
from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Deque

from .events import CaptureObserver

if TYPE_CHECKING:  # pragma: no cover - import cycles
    from .metadata import RecordingMetadataRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EventLogEntry:
    timestamp: float
    event: str
    message: str
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "event": self.event,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "EventLogEntry | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        try:
            timestamp = float(payload.get("timestamp"))
        except (TypeError, ValueError):
            return None
        details = payload.get("details")
        return cls(timestamp, event, message, details if isinstance(details, dict) else None)


class EventLog:
    """Append-only JSONL log with a bounded in-memory tail.

    Passing ``path=None`` keeps the log in memory only.
    """

    def __init__(self, path: Path | str | None = None, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path = Path(path) if path is not None else None
        self._entries: Deque[EventLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(self, event: str, message: str, **details: Any) -> EventLogEntry:
        cleaned = {key: value for key, value in details.items() if value is not None}
        entry = EventLogEntry(time.time(), event, message, cleaned or None)
        with self._lock:
            self._entries.append(entry)
            self._append(entry)
        return entry

    def tail(self, limit: int | None = None, *, event: str | None = None) -> list[EventLogEntry]:
        with self._lock:
            entries = list(self._entries)
        if event:
            entries = [entry for entry in entries if entry.event == event]
        if limit is not None:
            entries = entries[-max(1, int(limit)) :]
        return entries

    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            logger.warning("Unable to load event log: %s", exc)
            return
        for line in lines:
            if not line.strip():
                continue
            try:
                entry = EventLogEntry.from_dict(json.loads(line))
            except ValueError:
                continue
            if entry is not None:
                self._entries.append(entry)

    def _append(self, entry: EventLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":"), default=str) + "\n")
        except OSError as exc:
            logger.warning("Unable to persist event log: %s", exc)


class EventLogObserver(CaptureObserver):
    """Mirror recording lifecycle notifications into an :class:`EventLog`.

    Per-frame analysis updates are not logged.
    """

    def __init__(self, log: EventLog) -> None:
        self.log = log

    def on_condition_changed(self, is_met: bool) -> None:
        self.log.record("condition", "Condition met" if is_met else "Condition lost", met=is_met)

    def on_recording_changed(self, is_recording: bool) -> None:
        if is_recording:
            self.log.record("recording_started", "Recording started")
        else:
            self.log.record("recording_stopped", "Recording stopped")

    def on_recording_finished(self, output: Path) -> None:
        self.log.record("recording_finished", f"Saved {Path(output).name}", file=str(output))

    def on_recording_failed(self, error: BaseException) -> None:
        self.log.record(
            "recording_failed", str(error) or error.__class__.__name__, error=error.__class__.__name__
        )

    def on_metadata_saved(self, path: Path, record: "RecordingMetadataRecord") -> None:
        self.log.record("metadata_saved", f"Saved {Path(path).name}", **record.to_dict())


__all__ = ["EventLog", "EventLogEntry", "EventLogObserver"]
