"""Per-step elapsed-time tracking with pause/resume support."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .contracts import PausedPhase, RunningPhase, StepTiming, StoppedPhase
from .errors import InvalidTransitionError


def whole_seconds(start: datetime, end: datetime) -> int:
    """Integer seconds between ``start`` and ``end``, truncated toward zero."""
    return int((end - start).total_seconds())


class StepTimingTracker:
    """Drives the :class:`StepTiming` record of a single step.

    Timing records are immutable; each operation replaces ``self.timing``
    with the next state. All durations are whole seconds.
    """

    def __init__(self, timing: Optional[StepTiming] = None) -> None:
        self.timing = timing

    def _require_open(self) -> StepTiming:
        if self.timing is None or not self.timing.is_open:
            raise InvalidTransitionError("Step timing is not running")
        return self.timing

    def start(self, now: datetime) -> StepTiming:
        if self.timing is not None and self.timing.is_open:
            raise InvalidTransitionError("Step timing has already been started")
        self.timing = StepTiming(start_time=now)
        return self.timing

    def pause(self, now: datetime) -> StepTiming:
        timing = self._require_open()
        if timing.is_paused:
            raise InvalidTransitionError("Step timing is already paused")
        self.timing = timing.model_copy(update={"phase": PausedPhase(paused_at=now)})
        return self.timing

    def resume(self, now: datetime) -> StepTiming:
        timing = self._require_open()
        if not timing.is_paused:
            raise InvalidTransitionError("Step timing is not paused")
        self.timing = timing.model_copy(
            update={
                "total_paused_seconds": self._folded_pause(timing, now),
                "phase": RunningPhase(),
            }
        )
        return self.timing

    def stop(self, now: datetime) -> StepTiming:
        timing = self._require_open()
        total = self._folded_pause(timing, now) if timing.is_paused else timing.total_paused_seconds
        self.timing = timing.model_copy(
            update={"total_paused_seconds": total, "phase": StoppedPhase(end_time=now)}
        )
        return self.timing

    def elapsed_active_seconds(self, now: datetime) -> int:
        """Active time excluding pauses; the step's reported ``duration_seconds``."""
        timing = self.timing
        if timing is None:
            return 0
        end = timing.end_time or now
        paused = timing.total_paused_seconds
        if timing.is_paused:
            # an open pause does not count as active time either
            paused = self._folded_pause(timing, now)
        return max(0, whole_seconds(timing.start_time, end) - paused)

    @staticmethod
    def _folded_pause(timing: StepTiming, now: datetime) -> int:
        paused_at = timing.paused_at
        if paused_at is None:
            raise InvalidTransitionError("Step timing is not paused")
        return timing.total_paused_seconds + max(0, whole_seconds(paused_at, now))
