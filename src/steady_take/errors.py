"""Exception hierarchy shared by the capture, recording and metadata layers."""
from __future__ import annotations

from typing import Iterable


class CaptureError(RuntimeError):
    """Base class for all SteadyTake failures."""


class PermissionsDenied(CaptureError):
    """Raised when camera access has not been granted."""


class CameraError(CaptureError):
    """Raised when the capture device cannot be used."""


class NoCameraAvailable(CameraError):
    """Raised when no compatible camera device exists."""


class DeviceAttachFailed(CameraError):
    """Raised when a camera exists but cannot be attached to the session."""


class RecordingWriteFailed(CaptureError):
    """Raised when the media writer could not produce a usable file."""


class MaximumDurationReached(CaptureError):
    """Completion reason reported when a take hits the configured cap.

    This is not a failure: the recording state machine routes it through the
    success path.
    """


class MetadataWriteFailed(CaptureError):
    """Raised when a recording sidecar could not be written."""


class DurationLoadFailed(CaptureError):
    """Raised when the duration of a finished media file cannot be loaded."""


def summarise_exception(exc: BaseException) -> str:
    """Collect the unique error messages from an exception chain."""

    details: list[str] = []
    seen: set[str] = set()
    to_consider: Iterable[BaseException | None] = (
        exc,
        getattr(exc, "__cause__", None),
        getattr(exc, "__context__", None),
    )
    for candidate in to_consider:
        if candidate is None:
            continue
        text = str(candidate).strip()
        if text and text not in seen:
            details.append(text)
            seen.add(text)
    return " | ".join(details)


__all__ = [
    "CameraError",
    "CaptureError",
    "DeviceAttachFailed",
    "DurationLoadFailed",
    "MaximumDurationReached",
    "MetadataWriteFailed",
    "NoCameraAvailable",
    "PermissionsDenied",
    "RecordingWriteFailed",
    "summarise_exception",
]
