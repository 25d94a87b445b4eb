from __future__ import annotations

import concurrent.futures
import json
from pathlib import Path

import pytest

from steady_take.errors import DurationLoadFailed, MetadataWriteFailed
from steady_take.metadata import (
    MetadataPersister,
    RecordingMetadataRecord,
    load_sidecar,
    write_sidecar,
)
from steady_take.metrics import RecordingMetrics


def _resolved(metrics: RecordingMetrics) -> concurrent.futures.Future[RecordingMetrics]:
    future: concurrent.futures.Future[RecordingMetrics] = concurrent.futures.Future()
    future.set_result(metrics)
    return future


def test_record_uses_sidecar_wire_keys() -> None:
    record = RecordingMetadataRecord("VID_2025-08-14_12-30-55.mp4", 12.5, True, 7.0)
    assert record.to_dict() == {
        "video_filename": "VID_2025-08-14_12-30-55.mp4",
        "recording_duration_seconds": 12.5,
        "was_condition_met": True,
        "time_in_green_state_seconds": 7.0,
    }
    assert " " not in record.to_json()


def test_sidecar_round_trip(tmp_path: Path) -> None:
    record = RecordingMetadataRecord("clip.mp4", 3.25, False, 0.0)
    target = write_sidecar(tmp_path / "clip.json", record)
    assert load_sidecar(target) == record
    assert sorted(p.name for p in tmp_path.iterdir()) == ["clip.json"]


def test_sidecar_write_failure_is_reported(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("x")
    with pytest.raises(MetadataWriteFailed):
        write_sidecar(blocker / "clip.json", RecordingMetadataRecord("clip.mp4", 1.0, True, 1.0))


def test_malformed_sidecar_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "clip.json"
    path.write_text(json.dumps({"video_filename": "clip.mp4"}))
    with pytest.raises(ValueError):
        load_sidecar(path)
    path.write_text("[1, 2]")
    with pytest.raises(ValueError):
        load_sidecar(path)


def test_persister_writes_sidecar_next_to_media(tmp_path: Path) -> None:
    media = tmp_path / "VID_1.mp4"
    media.write_bytes(b"")
    saved: list[tuple[Path, RecordingMetadataRecord]] = []
    persister = MetadataPersister(
        duration_loader=lambda path: 8.5,
        on_saved=lambda path, record: saved.append((path, record)),
    )
    try:
        metrics = RecordingMetrics(
            active=False, condition_ever_met=True, condition_accumulated_seconds=4.0
        )
        record = persister.persist(media, _resolved(metrics)).result(timeout=5)
    finally:
        persister.close()

    assert record == RecordingMetadataRecord("VID_1.mp4", 8.5, True, 4.0)
    sidecar = tmp_path / "VID_1.json"
    assert json.loads(sidecar.read_text()) == record.to_dict()
    assert saved == [(sidecar, record)]


def test_duration_failure_skips_sidecar(tmp_path: Path) -> None:
    media = tmp_path / "VID_2.mp4"

    def fail(path: Path) -> float:
        raise DurationLoadFailed("unreadable")

    persister = MetadataPersister(duration_loader=fail)
    try:
        result = persister.persist(media, _resolved(RecordingMetrics())).result(timeout=5)
    finally:
        persister.close()
    assert result is None
    assert not (tmp_path / "VID_2.json").exists()


def test_write_failure_is_swallowed(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    persister = MetadataPersister(
        sidecar_for=lambda media: blocker / "out.json",
        duration_loader=lambda path: 1.0,
    )
    try:
        result = persister.persist(tmp_path / "VID_3.mp4", _resolved(RecordingMetrics())).result(timeout=5)
    finally:
        persister.close()
    assert result is None


def test_persister_waits_for_metrics_hand_off(tmp_path: Path) -> None:
    pending: concurrent.futures.Future[RecordingMetrics] = concurrent.futures.Future()
    persister = MetadataPersister(duration_loader=lambda path: 2.0)
    try:
        result = persister.persist(tmp_path / "VID_4.mp4", pending)
        assert not result.done()
        pending.set_result(RecordingMetrics(condition_ever_met=True, condition_accumulated_seconds=1.5))
        record = result.result(timeout=5)
    finally:
        persister.close()
    assert record is not None
    assert record.condition_accumulated_seconds == 1.5
