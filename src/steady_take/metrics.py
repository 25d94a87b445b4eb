"""Per-recording accounting of time spent with the acceptance condition met."""
from __future__ import annotations

import concurrent.futures
import logging
import time
from dataclasses import dataclass, replace
from typing import Callable

from .lanes import SerialLane

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RecordingMetrics:
    active: bool = False
    condition_ever_met: bool = False
    condition_accumulated_seconds: float = 0.0
    condition_started_at: float | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "active": self.active,
            "condition_ever_met": self.condition_ever_met,
            "condition_accumulated_seconds": self.condition_accumulated_seconds,
            "condition_started_at": self.condition_started_at,
        }


class MetricsAccumulator:
    """Track how long the acceptance condition held during one recording.

    Not thread-safe on its own; every mutation is expected to happen on a single
    lane (see :class:`LaneBoundMetrics`). Calls made while no recording is
    active are ignored.
    """

    def __init__(self) -> None:
        self._state = RecordingMetrics()

    def begin(self) -> None:
        self._state = RecordingMetrics(active=True)

    def set_condition(self, is_met: bool, now: float) -> None:
        state = self._state
        if not state.active:
            return
        if is_met:
            if state.condition_started_at is None:
                self._state = replace(state, condition_started_at=now, condition_ever_met=True)
        elif state.condition_started_at is not None:
            self._state = replace(
                state,
                condition_accumulated_seconds=self._closed_total(state, now),
                condition_started_at=None,
            )

    def end(self, now: float) -> None:
        state = self._state
        if not state.active:
            return
        self._state = replace(
            state,
            active=False,
            condition_accumulated_seconds=self._closed_total(state, now),
            condition_started_at=None,
        )

    def snapshot(self) -> RecordingMetrics:
        return self._state

    @staticmethod
    def _closed_total(state: RecordingMetrics, now: float) -> float:
        started = state.condition_started_at
        if started is None:
            return state.condition_accumulated_seconds
        return state.condition_accumulated_seconds + max(0.0, now - started)


class LaneBoundMetrics:
    """Confine a :class:`MetricsAccumulator` to the analysis lane.

    Other lanes never read the accumulator directly; they ask for a
    :meth:`finalize` future which ends the recording and copies the values out
    in one lane task.
    """

    def __init__(
        self,
        lane: SerialLane,
        accumulator: MetricsAccumulator | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lane = lane
        self._accumulator = accumulator or MetricsAccumulator()
        self._clock = clock

    @property
    def lane(self) -> SerialLane:
        return self._lane

    def begin(self) -> "concurrent.futures.Future[None]":
        return self._lane.submit(self._accumulator.begin)

    def set_condition(self, is_met: bool, now: float | None = None) -> None:
        if now is None:
            now = self._clock()
        if self._lane.is_current():
            self._accumulator.set_condition(is_met, now)
        else:
            self._lane.submit(self._accumulator.set_condition, is_met, now)

    def finalize(self) -> "concurrent.futures.Future[RecordingMetrics]":
        def _finalize() -> RecordingMetrics:
            self._accumulator.end(self._clock())
            snapshot = self._accumulator.snapshot()
            logger.debug("Recording metrics finalised: %s", snapshot)
            return snapshot

        return self._lane.submit(_finalize)

    def snapshot(self) -> "concurrent.futures.Future[RecordingMetrics]":
        return self._lane.submit(self._accumulator.snapshot)


__all__ = ["LaneBoundMetrics", "MetricsAccumulator", "RecordingMetrics"]
