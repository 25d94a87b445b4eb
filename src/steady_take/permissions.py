"""Camera and microphone authorisation checks."""
from __future__ import annotations

import enum
import glob
import logging
import os
from abc import ABC, abstractmethod
from typing import Mapping

logger = logging.getLogger(__name__)


class MediaType(str, enum.Enum):
    VIDEO = "video"
    AUDIO = "audio"


class AuthorizationStatus(str, enum.Enum):
    AUTHORIZED = "authorized"
    DENIED = "denied"
    RESTRICTED = "restricted"
    NOT_DETERMINED = "not_determined"


class PermissionProvider(ABC):
    """Report and request access to capture hardware."""

    @abstractmethod
    def status(self, media: MediaType) -> AuthorizationStatus:
        ...

    def request_access(self, media: MediaType) -> bool:
        return self.status(media) is AuthorizationStatus.AUTHORIZED


class StaticPermissionProvider(PermissionProvider):
    """Fixed answers, useful for tests and for hosts without access control."""

    def __init__(
        self,
        statuses: Mapping[MediaType | str, AuthorizationStatus | str] | None = None,
        *,
        grants: Mapping[MediaType | str, bool] | None = None,
    ) -> None:
        self._statuses: dict[MediaType, AuthorizationStatus] = {
            MediaType.VIDEO: AuthorizationStatus.AUTHORIZED,
            MediaType.AUDIO: AuthorizationStatus.AUTHORIZED,
        }
        for media, status in (statuses or {}).items():
            self._statuses[MediaType(media)] = AuthorizationStatus(status)
        self._grants = {MediaType(media): bool(ok) for media, ok in (grants or {}).items()}
        self.requests: list[MediaType] = []

    def status(self, media: MediaType) -> AuthorizationStatus:
        return self._statuses[MediaType(media)]

    def request_access(self, media: MediaType) -> bool:
        media = MediaType(media)
        self.requests.append(media)
        granted = self._grants.get(media, False)
        self._statuses[media] = (
            AuthorizationStatus.AUTHORIZED if granted else AuthorizationStatus.DENIED
        )
        return granted


class DeviceNodePermissionProvider(PermissionProvider):
    """Derive access from the Linux device nodes the process can open."""

    def __init__(
        self,
        video_pattern: str = "/dev/video*",
        audio_pattern: str = "/dev/snd/*",
    ) -> None:
        self._patterns = {MediaType.VIDEO: video_pattern, MediaType.AUDIO: audio_pattern}

    def status(self, media: MediaType) -> AuthorizationStatus:
        nodes = sorted(glob.glob(self._patterns[MediaType(media)]))
        if not nodes:
            # Without nodes there is nothing to deny; device selection reports the absence.
            return AuthorizationStatus.AUTHORIZED
        if any(os.access(node, os.R_OK | os.W_OK) for node in nodes):
            return AuthorizationStatus.AUTHORIZED
        return AuthorizationStatus.DENIED


def resolve_permissions(provider: PermissionProvider) -> tuple[bool, bool]:
    """Return ``(camera_ok, microphone_ok)``.

    Undetermined statuses are requested. A denied microphone never blocks
    the camera.
    """

    camera = provider.status(MediaType.VIDEO)
    microphone = provider.status(MediaType.AUDIO)
    if camera is AuthorizationStatus.AUTHORIZED and microphone is not AuthorizationStatus.NOT_DETERMINED:
        return True, microphone is AuthorizationStatus.AUTHORIZED

    camera_ok = camera is AuthorizationStatus.AUTHORIZED
    microphone_ok = microphone is AuthorizationStatus.AUTHORIZED
    if camera is AuthorizationStatus.NOT_DETERMINED:
        camera_ok = provider.request_access(MediaType.VIDEO)
    if microphone is AuthorizationStatus.NOT_DETERMINED:
        microphone_ok = provider.request_access(MediaType.AUDIO)
    logger.debug("Permissions resolved: camera=%s microphone=%s", camera_ok, microphone_ok)
    return camera_ok, microphone_ok


__all__ = [
    "AuthorizationStatus",
    "DeviceNodePermissionProvider",
    "MediaType",
    "PermissionProvider",
    "StaticPermissionProvider",
    "resolve_permissions",
]
