"""FastAPI application exposing the SteadyTake capture controls."""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Callable

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from .camera import CAMERA_SOURCES
from .config import RESOLUTION_PRESETS, ConfigManager
from .errors import CameraError, CaptureError, PermissionsDenied
from .event_log import EventLog, EventLogObserver
from .media import MediaWriter, probe_duration
from .metadata import load_sidecar
from .permissions import PermissionProvider
from .session import SessionController
from .store import VideoStore
from .version import APP_VERSION


class SettingsPayload(BaseModel):
    max_duration_seconds: float | None = Field(default=None, gt=0)
    analysis_target_fps: float | None = Field(default=None, gt=0)
    sample_stride: int | None = Field(default=None, ge=1)
    brightness_min: float | None = Field(default=None, ge=0.0, le=1.0)
    brightness_max: float | None = Field(default=None, ge=0.0, le=1.0)
    motion_max: float | None = Field(default=None, ge=0.0, le=1.0)
    camera: str | None = None
    resolution: str | None = None
    capture_fps: int | None = Field(default=None, ge=1, le=120)
    discard_late_frames: bool | None = None


class RecordingPayload(BaseModel):
    name: str | None = Field(default=None, max_length=128)


def create_app(
    config_path: Path | str = Path("data/config.json"),
    *,
    device_provider: Any | None = None,
    permissions: PermissionProvider | None = None,
    writer: MediaWriter | None = None,
    recordings_dir: Path | str | None = None,
    duration_loader: Callable[[Path], float] = probe_duration,
    event_log: EventLog | None = None,
) -> FastAPI:
    app = FastAPI(title="SteadyTake", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_path = Path(config_path)
    config_manager = ConfigManager(config_path)
    if recordings_dir is None:
        recordings_dir = os.environ.get("STEADYTAKE_RECORDINGS_DIR") or config_path.parent / "recordings"
    store = VideoStore(recordings_dir)
    if event_log is None:
        event_log = EventLog(config_path.with_name("events.jsonl"))

    controller = SessionController(
        settings=config_manager.get_settings(),
        device_provider=device_provider,
        permissions=permissions,
        writer=writer,
        store=store,
        duration_loader=duration_loader,
    )
    controller.observers.subscribe(EventLogObserver(event_log))
    app.state.controller = controller
    app.state.event_log = event_log

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        event_log.record("startup", "SteadyTake application starting up.")

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        event_log.record("shutdown", "SteadyTake application shutting down.")
        await run_in_threadpool(controller.close)

    @app.get("/api/status")
    async def get_status() -> dict[str, Any]:
        return controller.status()

    @app.post("/api/session/start")
    async def start_session() -> dict[str, Any]:
        try:
            state = await asyncio.wrap_future(controller.start_session())
        except PermissionsDenied as exc:
            event_log.record("session_failed", str(exc), error="PermissionsDenied")
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        except CameraError as exc:
            event_log.record("session_failed", str(exc), error=exc.__class__.__name__)
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except CaptureError as exc:
            logger.exception("Unable to start capture session")
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        event_log.record("session_started", "Capture session started.", state=state.value)
        return {"state": state.value}

    @app.post("/api/session/stop")
    async def stop_session() -> dict[str, Any]:
        state = await asyncio.wrap_future(controller.stop_session())
        event_log.record("session_stopped", "Capture session stopped.")
        return {"state": state.value}

    @app.post("/api/recording/start")
    async def start_recording(payload: RecordingPayload | None = None) -> dict[str, Any]:
        destination = None
        if payload is not None and payload.name:
            try:
                destination = store.resolve(payload.name)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        output = await asyncio.wrap_future(controller.start_recording(destination))
        if output is None:
            raise HTTPException(status_code=409, detail="Recording could not be started")
        return {"recording": True, "file": output.name}

    @app.post("/api/recording/stop")
    async def stop_recording() -> dict[str, Any]:
        stopped = await asyncio.wrap_future(controller.stop_recording())
        if not stopped:
            raise HTTPException(status_code=409, detail="No recording in progress")
        return {"stopping": True}

    @app.get("/api/settings")
    async def get_settings() -> dict[str, Any]:
        payload = config_manager.get_settings().to_dict()
        payload["camera_sources"] = dict(CAMERA_SOURCES)
        payload["resolution_presets"] = list(RESOLUTION_PRESETS)
        return payload

    @app.put("/api/settings")
    async def update_settings(payload: SettingsPayload) -> dict[str, Any]:
        changes = payload.model_dump(exclude_none=True)
        if not changes:
            raise HTTPException(status_code=400, detail="No settings provided")
        try:
            settings = config_manager.set_settings(changes)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        await asyncio.wrap_future(controller.apply_settings(settings))
        event_log.record("settings_updated", "Capture settings updated.", **changes)
        return settings.to_dict()

    @app.get("/api/recordings/{name}/metadata")
    async def get_recording_metadata(name: str) -> dict[str, Any]:
        try:
            media = store.resolve(name)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            record = await run_in_threadpool(load_sidecar, store.sidecar_path(media))
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Metadata not found") from exc
        except ValueError as exc:
            raise HTTPException(status_code=500, detail=f"Corrupt metadata: {exc}") from exc
        return record.to_dict()

    @app.get("/api/events")
    async def get_events(limit: int = 50, event: str | None = None) -> dict[str, Any]:
        entries = event_log.tail(limit, event=event)
        return {"entries": [entry.to_dict() for entry in entries]}

    return app


__all__ = ["create_app"]
