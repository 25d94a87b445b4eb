"""Configuration management for SteadyTake."""
from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Mapping, Sequence

from .analysis import DEFAULT_ANALYSIS_FPS, DEFAULT_SAMPLE_STRIDE, AcceptanceCriteria
from .camera import CAMERA_SOURCES, DEFAULT_CAMERA_CHOICE, resolve_camera_alias
from .media import DEFAULT_MAX_DURATION_SECONDS

logger = logging.getLogger(__name__)

MIN_CAPTURE_FPS = 1
MAX_CAPTURE_FPS = 120
DEFAULT_CAPTURE_FPS = 30


@dataclass(frozen=True, slots=True)
class Resolution:
    """Represents the desired capture resolution for the camera."""

    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Resolution dimensions must be positive integers")

    def as_tuple(self) -> tuple[int, int]:
        return (int(self.width), int(self.height))

    def key(self) -> str:
        return f"{self.width}x{self.height}"


RESOLUTION_PRESETS: Mapping[str, Resolution] = {
    "640x480": Resolution(640, 480),
    "960x540": Resolution(960, 540),
    "1280x720": Resolution(1280, 720),
    "1920x1080": Resolution(1920, 1080),
}

DEFAULT_RESOLUTION = RESOLUTION_PRESETS["1280x720"]


@dataclass(frozen=True, slots=True)
class CaptureSettings:
    """Everything the capture session needs to configure itself."""

    max_duration_seconds: float = DEFAULT_MAX_DURATION_SECONDS
    analysis_target_fps: float = DEFAULT_ANALYSIS_FPS
    sample_stride: int = DEFAULT_SAMPLE_STRIDE
    brightness_min: float = 0.15
    brightness_max: float = 0.85
    motion_max: float = 0.05
    camera: str = DEFAULT_CAMERA_CHOICE
    resolution: Resolution = DEFAULT_RESOLUTION
    capture_fps: int = DEFAULT_CAPTURE_FPS
    discard_late_frames: bool = True

    def __post_init__(self) -> None:
        for name in ("max_duration_seconds", "analysis_target_fps"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
                raise ValueError(f"{name} must be a positive number")
        if not isinstance(self.sample_stride, int) or self.sample_stride < 1:
            raise ValueError("sample_stride must be an integer of at least 1")
        if self.camera not in CAMERA_SOURCES:
            raise ValueError(f"Unknown camera selection: {self.camera}")
        if not isinstance(self.capture_fps, int) or not (
            MIN_CAPTURE_FPS <= self.capture_fps <= MAX_CAPTURE_FPS
        ):
            raise ValueError(
                f"capture_fps must be between {MIN_CAPTURE_FPS} and {MAX_CAPTURE_FPS}"
            )
        # Raises for out-of-range or inverted thresholds.
        self.criteria()

    def criteria(self) -> AcceptanceCriteria:
        return AcceptanceCriteria(
            brightness_min=self.brightness_min,
            brightness_max=self.brightness_max,
            motion_max=self.motion_max,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_duration_seconds": float(self.max_duration_seconds),
            "analysis_target_fps": float(self.analysis_target_fps),
            "sample_stride": int(self.sample_stride),
            "brightness_min": float(self.brightness_min),
            "brightness_max": float(self.brightness_max),
            "motion_max": float(self.motion_max),
            "camera": self.camera,
            "resolution": {"width": self.resolution.width, "height": self.resolution.height},
            "capture_fps": int(self.capture_fps),
            "discard_late_frames": bool(self.discard_late_frames),
        }


def default_settings() -> CaptureSettings:
    """Return defaults with ``STEADYTAKE_CAMERA``/``STEADYTAKE_CAMERA_FPS`` applied."""

    settings = CaptureSettings()
    camera = os.getenv("STEADYTAKE_CAMERA")
    if camera and camera.strip():
        try:
            settings = replace(settings, camera=_parse_camera(camera, default=settings.camera))
        except ValueError as exc:
            logger.warning("Ignoring STEADYTAKE_CAMERA=%r: %s", camera, exc)
    fps = os.getenv("STEADYTAKE_CAMERA_FPS")
    if fps and fps.strip():
        try:
            settings = replace(settings, capture_fps=_parse_int(fps, "capture_fps"))
        except ValueError as exc:
            logger.warning("Ignoring STEADYTAKE_CAMERA_FPS=%r: %s", fps, exc)
    return settings


def _parse_resolution(value: Any, *, default: Resolution) -> Resolution:
    if value is None:
        return default
    if isinstance(value, Resolution):
        return Resolution(value.width, value.height)
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return default
        preset = RESOLUTION_PRESETS.get(text)
        if preset:
            return preset
        parts = text.split("x", 1)
        if len(parts) == 2:
            try:
                return Resolution(int(parts[0].strip()), int(parts[1].strip()))
            except ValueError as exc:
                raise ValueError("Resolution values must be integers") from exc
        raise ValueError(f"Unknown resolution preset: {value}")
    if isinstance(value, Mapping):
        width_raw = value.get("width")
        height_raw = value.get("height")
        if width_raw is None or height_raw is None:
            raise ValueError("Resolution mapping must include 'width' and 'height'")
        try:
            return Resolution(int(width_raw), int(height_raw))
        except (TypeError, ValueError) as exc:
            raise ValueError("Resolution width and height must be integers") from exc
    if isinstance(value, (Sequence, Iterable)):
        items = list(value)
        if len(items) != 2:
            raise ValueError("Resolution sequence must contain width and height")
        try:
            return Resolution(int(items[0]), int(items[1]))
        except (TypeError, ValueError) as exc:
            raise ValueError("Resolution width and height must be integers") from exc
    raise ValueError("Unsupported resolution value")


def _parse_camera(value: Any, *, default: str) -> str:
    if value is None:
        return default
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Camera selection must be a non-empty string")
    normalised = resolve_camera_alias(value)
    if normalised not in CAMERA_SOURCES:
        raise ValueError(f"Unknown camera selection: {value}")
    return normalised


def _parse_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number") from exc


def _parse_int(value: Any, name: str) -> int:
    number = _parse_float(value, name)
    if not math.isfinite(number) or number != int(number):
        raise ValueError(f"{name} must be an integer")
    return int(number)


def _parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    raise ValueError(f"{name} must be a boolean")


def _parse_capture_settings(value: Any, *, default: CaptureSettings) -> CaptureSettings:
    """Merge ``value`` over ``default``; unknown keys are rejected."""

    if value is None:
        return default
    if isinstance(value, CaptureSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Capture settings must be provided as a mapping")
    unknown = set(value) - set(CaptureSettings.__dataclass_fields__)
    if unknown:
        raise ValueError(f"Unknown capture settings: {', '.join(sorted(unknown))}")

    changes: Dict[str, Any] = {}
    for name in ("max_duration_seconds", "analysis_target_fps", "brightness_min", "brightness_max", "motion_max"):
        if name in value:
            changes[name] = _parse_float(value[name], name)
    for name in ("sample_stride", "capture_fps"):
        if name in value:
            changes[name] = _parse_int(value[name], name)
    if "camera" in value:
        changes["camera"] = _parse_camera(value["camera"], default=default.camera)
    if "resolution" in value:
        changes["resolution"] = _parse_resolution(value["resolution"], default=default.resolution)
    if "discard_late_frames" in value:
        changes["discard_late_frames"] = _parse_bool(value["discard_late_frames"], "discard_late_frames")
    return replace(default, **changes)


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._settings = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> CaptureSettings:
        defaults = default_settings()
        if not self._path.exists():
            return defaults
        try:
            payload = json.loads(self._path.read_text())
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            return _parse_capture_settings(payload.get("capture", payload), default=defaults)
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        payload = {"capture": self._settings.to_dict()}
        self._path.write_text(json.dumps(payload, indent=2))

    def get_settings(self) -> CaptureSettings:
        with self._lock:
            return self._settings

    def set_settings(self, value: Mapping[str, Any] | CaptureSettings) -> CaptureSettings:
        """Apply a full or partial update and persist the result."""

        with self._lock:
            settings = _parse_capture_settings(value, default=self._settings)
            self._settings = settings
            self._save()
        logger.info("Capture settings updated")
        return settings


__all__ = [
    "CaptureSettings",
    "ConfigManager",
    "DEFAULT_CAPTURE_FPS",
    "DEFAULT_RESOLUTION",
    "RESOLUTION_PRESETS",
    "Resolution",
    "default_settings",
]
