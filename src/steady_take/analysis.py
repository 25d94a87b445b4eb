"""Per-frame lighting and motion scoring."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np

from .frames import FrameBuffer

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_STRIDE = 8
DEFAULT_ANALYSIS_FPS = 15.0


@dataclass(frozen=True, slots=True)
class FrameScore:
    """Coarse quality estimate for one frame.

    ``average_luma`` and ``motion`` are both normalised to ``[0, 1]``.
    """

    average_luma: float
    motion: float
    timestamp: float

    def to_dict(self) -> dict[str, float]:
        return {
            "average_luma": self.average_luma,
            "motion": self.motion,
            "timestamp": self.timestamp,
        }


class FrameAnalyzer(Protocol):
    def analyze(self, frame: FrameBuffer) -> FrameScore | None:
        ...

    def reset(self) -> None:
        ...


@dataclass
class FrameSampler:
    """Estimate brightness and frame-to-frame motion from a sparse luma grid.

    Only plane 0 is read. Every ``stride``-th pixel in both directions is
    sampled, and motion compares the samples with those kept from the previous
    call. The previous sample belongs to this instance and is replaced on every
    successful analysis.
    """

    stride: int = DEFAULT_SAMPLE_STRIDE
    _previous: np.ndarray | None = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        self.stride = self._normalise_stride(self.stride)

    @staticmethod
    def _normalise_stride(value: int | float) -> int:
        try:
            stride = int(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("Sample stride must be an integer") from exc
        if stride < 1:
            raise ValueError("Sample stride must be at least 1")
        return stride

    def configure(self, *, stride: int | None = None) -> None:
        """Change the sampling stride; the motion baseline is dropped."""

        if stride is None:
            return
        stride = self._normalise_stride(stride)
        if stride != self.stride:
            self.stride = stride
            self.reset()

    def reset(self) -> None:
        self._previous = None

    def analyze(self, frame: FrameBuffer) -> FrameScore | None:
        with frame.locked():
            plane = frame.plane(0)
            if plane is None:
                return None
            # Copy out so the buffer can be released before any arithmetic.
            samples = np.array(plane[:: self.stride, :: self.stride], dtype=np.int32).reshape(-1)

        count = int(samples.size)
        total = int(samples.sum())
        average_luma = total / max(count * 255, 1)

        previous = self._previous
        motion = 0.0
        if previous is not None and count and previous.size == count:
            difference = int(np.abs(samples - previous).sum())
            motion = min(1.0, difference / (count * 255))

        self._previous = samples
        return FrameScore(
            average_luma=float(min(1.0, max(0.0, average_luma))),
            motion=float(motion),
            timestamp=frame.timestamp,
        )


class AnalysisThrottle:
    """Decide which capture timestamps are worth analysing.

    A timestamp is accepted when at least ``1 / max(1, target_fps)`` seconds
    have passed since the last accepted one. The interval is measured on the
    capture clock so wall-clock jumps have no effect.
    """

    def __init__(self, target_fps: float = DEFAULT_ANALYSIS_FPS) -> None:
        self._target_fps = self._normalise_fps(target_fps)
        self._last_accepted = -math.inf

    @staticmethod
    def _normalise_fps(value: float) -> float:
        try:
            fps = float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("Target FPS must be a number") from exc
        if not math.isfinite(fps) or fps <= 0:
            raise ValueError("Target FPS must be positive")
        return fps

    @property
    def target_fps(self) -> float:
        return self._target_fps

    @target_fps.setter
    def target_fps(self, value: float) -> None:
        self._target_fps = self._normalise_fps(value)

    @property
    def interval(self) -> float:
        return 1.0 / max(1.0, self._target_fps)

    def is_due(self, timestamp: float) -> bool:
        return timestamp - self._last_accepted >= self.interval

    def should_analyze(self, timestamp: float) -> bool:
        if self.is_due(timestamp):
            self._last_accepted = timestamp
            return True
        return False

    def reset(self) -> None:
        self._last_accepted = -math.inf


@dataclass(frozen=True, slots=True)
class AcceptanceCriteria:
    """Thresholds describing a well-lit, steady frame."""

    brightness_min: float = 0.15
    brightness_max: float = 0.85
    motion_max: float = 0.05

    def __post_init__(self) -> None:
        for name in ("brightness_min", "brightness_max", "motion_max"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not 0.0 <= float(value) <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")
        if self.brightness_min > self.brightness_max:
            raise ValueError("brightness_min must not exceed brightness_max")

    def is_met(self, score: FrameScore) -> bool:
        return (
            self.brightness_min <= score.average_luma <= self.brightness_max
            and score.motion < self.motion_max
        )


__all__ = [
    "AcceptanceCriteria",
    "AnalysisThrottle",
    "DEFAULT_ANALYSIS_FPS",
    "DEFAULT_SAMPLE_STRIDE",
    "FrameAnalyzer",
    "FrameSampler",
    "FrameScore",
]
