"""Quality sidecars written next to finished recordings."""
from __future__ import annotations

import concurrent.futures
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from .errors import DurationLoadFailed, MetadataWriteFailed
from .media import probe_duration
from .metrics import RecordingMetrics
from .store import sidecar_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RecordingMetadataRecord:
    filename: str
    duration_seconds: float
    condition_ever_met: bool
    condition_accumulated_seconds: float

    @classmethod
    def from_metrics(
        cls, media: Path, duration_seconds: float, metrics: RecordingMetrics
    ) -> "RecordingMetadataRecord":
        return cls(
            filename=Path(media).name,
            duration_seconds=float(duration_seconds),
            condition_ever_met=bool(metrics.condition_ever_met),
            condition_accumulated_seconds=float(metrics.condition_accumulated_seconds),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "video_filename": self.filename,
            "recording_duration_seconds": self.duration_seconds,
            "was_condition_met": self.condition_ever_met,
            "time_in_green_state_seconds": self.condition_accumulated_seconds,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecordingMetadataRecord":
        try:
            filename = payload["video_filename"]
            duration = payload["recording_duration_seconds"]
            met = payload["was_condition_met"]
            accumulated = payload["time_in_green_state_seconds"]
        except KeyError as exc:
            raise ValueError(f"Sidecar is missing {exc.args[0]!r}") from exc
        if not isinstance(filename, str) or not filename:
            raise ValueError("video_filename must be a non-empty string")
        if not isinstance(met, bool):
            raise ValueError("was_condition_met must be a boolean")
        for key, value in (
            ("recording_duration_seconds", duration),
            ("time_in_green_state_seconds", accumulated),
        ):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{key} must be a number")
        return cls(
            filename=filename,
            duration_seconds=float(duration),
            condition_ever_met=met,
            condition_accumulated_seconds=float(accumulated),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> "RecordingMetadataRecord":
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid sidecar JSON: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise ValueError("Sidecar must contain a JSON object")
        return cls.from_dict(payload)


def write_sidecar(path: Path, record: RecordingMetadataRecord) -> Path:
    """Atomically write ``record`` to ``path``."""

    path = Path(path)
    data = record.to_json()
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp", delete=False
        ) as handle:
            tmp_name = handle.name
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
        raise MetadataWriteFailed(f"Unable to write {path}: {exc}") from exc
    return path


def load_sidecar(path: Path) -> RecordingMetadataRecord:
    return RecordingMetadataRecord.from_json(Path(path).read_text(encoding="utf-8"))


class MetadataPersister:
    """Write one sidecar per completed recording without blocking the caller.

    ``persist`` loads the media duration, waits for the metrics hand-off and
    writes the sidecar on a private worker thread. Duration and write failures
    are logged; the returned future then resolves to ``None``.
    """

    def __init__(
        self,
        *,
        sidecar_for: Callable[[Path], Path] = sidecar_path,
        duration_loader: Callable[[Path], float] = probe_duration,
        on_saved: Callable[[Path, RecordingMetadataRecord], Any] | None = None,
        snapshot_timeout: float | None = 10.0,
    ) -> None:
        self._sidecar_for = sidecar_for
        self._duration_loader = duration_loader
        self._on_saved = on_saved
        self._snapshot_timeout = snapshot_timeout
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="metadata"
        )

    def persist(
        self,
        media: Path,
        metrics: "concurrent.futures.Future[RecordingMetrics]",
    ) -> "concurrent.futures.Future[RecordingMetadataRecord | None]":
        return self._executor.submit(self._persist, Path(media), metrics)

    def _persist(
        self, media: Path, metrics: "concurrent.futures.Future[RecordingMetrics]"
    ) -> RecordingMetadataRecord | None:
        try:
            duration = self._duration_loader(media)
        except DurationLoadFailed as exc:
            logger.error("Skipping metadata for %s: %s", media.name, exc)
            return None

        try:
            snapshot = metrics.result(timeout=self._snapshot_timeout)
        except (concurrent.futures.CancelledError, concurrent.futures.TimeoutError) as exc:
            logger.error("Metrics for %s unavailable: %r", media.name, exc)
            return None

        record = RecordingMetadataRecord.from_metrics(media, duration, snapshot)
        target = self._sidecar_for(media)
        try:
            write_sidecar(target, record)
        except MetadataWriteFailed:
            logger.exception("Failed to save metadata for %s", media.name)
            return None
        logger.info("Saved metadata %s", target.name)

        if self._on_saved is not None:
            try:
                self._on_saved(target, record)
            except Exception:
                logger.exception("Metadata saved callback failed for %s", target)
        return record

    def flush(self, timeout: float | None = None) -> None:
        self._executor.submit(lambda: None).result(timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)


__all__ = [
    "MetadataPersister",
    "RecordingMetadataRecord",
    "load_sidecar",
    "write_sidecar",
]
