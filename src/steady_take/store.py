"""Filesystem naming for recordings and their metadata sidecars."""
from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_RECORDINGS_DIR = Path("data/recordings")
RECORDING_EXTENSION = ".mp4"
SIDECAR_EXTENSION = ".json"


def sidecar_path(media: Path) -> Path:
    """Return the metadata path that belongs to ``media``."""

    return Path(media).with_suffix(SIDECAR_EXTENSION)


class VideoStore:
    """Allocate recording paths inside a single directory."""

    def __init__(
        self,
        directory: Path | str | None = None,
        *,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        if directory is None:
            directory = os.getenv("STEADYTAKE_RECORDINGS_DIR") or DEFAULT_RECORDINGS_DIR
        self.directory = Path(directory)
        self._now = now

    def ensure_directory(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory

    def new_recording_path(self) -> Path:
        directory = self.ensure_directory()
        stem = self._now().strftime("VID_%Y-%m-%d_%H-%M-%S")
        candidate = directory / f"{stem}{RECORDING_EXTENSION}"
        counter = 1
        while candidate.exists() or sidecar_path(candidate).exists():
            candidate = directory / f"{stem}_{counter}{RECORDING_EXTENSION}"
            counter += 1
        return candidate

    def sidecar_path(self, media: Path) -> Path:
        return sidecar_path(media)

    def resolve(self, name: str) -> Path:
        """Return the path of the recording called ``name`` inside the store."""

        candidate = Path(name)
        if candidate.name != name or name in {"", ".", ".."}:
            raise ValueError(f"Invalid recording name: {name!r}")
        if not candidate.suffix:
            candidate = candidate.with_suffix(RECORDING_EXTENSION)
        return self.directory / candidate

    def delete(self, media: Path) -> None:
        """Remove a recording together with its sidecar."""

        media = Path(media)
        media.unlink()
        sidecar = sidecar_path(media)
        try:
            sidecar.unlink()
        except FileNotFoundError:
            pass
        logger.info("Deleted recording %s", media.name)


__all__ = [
    "DEFAULT_RECORDINGS_DIR",
    "RECORDING_EXTENSION",
    "SIDECAR_EXTENSION",
    "VideoStore",
    "sidecar_path",
]
