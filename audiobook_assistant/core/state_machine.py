from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum


class SchedulerState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    REQUESTING = "requesting"


# Pausing or switching files may happen while a request is outstanding,
# so REQUESTING can drop straight back to IDLE.
_ALLOWED: dict[SchedulerState, frozenset[SchedulerState]] = {
    SchedulerState.IDLE: frozenset({SchedulerState.ARMED}),
    SchedulerState.ARMED: frozenset({SchedulerState.REQUESTING, SchedulerState.IDLE}),
    SchedulerState.REQUESTING: frozenset({SchedulerState.ARMED, SchedulerState.IDLE}),
}


@dataclass(frozen=True)
class SchedulerTransition:
    source: SchedulerState
    target: SchedulerState
    reason: str = ""
    at: float = field(default_factory=time.monotonic)


class InvalidTransitionError(RuntimeError):
    def __init__(self, source: SchedulerState, target: SchedulerState, reason: str = ""):
        detail = f" ({reason})" if reason else ""
        super().__init__(f"Scheduler cannot go from {source.value} to {target.value}{detail}")
        self.source = source
        self.target = target


class SchedulerStateMachine:
    """Tracks whether extraction timers are armed and whether a request is outstanding.

    Only the most recent transitions are kept; the scheduler can run for the
    whole length of an audiobook.
    """

    def __init__(self, *, history_size: int = 64):
        self._state = SchedulerState.IDLE
        self._history: deque[SchedulerTransition] = deque(maxlen=history_size)

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def history(self) -> tuple[SchedulerTransition, ...]:
        return tuple(self._history)

    @property
    def last_reason(self) -> str:
        return self._history[-1].reason if self._history else ""

    def can_transition(self, target: SchedulerState) -> bool:
        return target is self._state or target in _ALLOWED[self._state]

    def transition(self, target: SchedulerState, reason: str = "") -> SchedulerTransition | None:
        if target is self._state:
            return None
        if target not in _ALLOWED[self._state]:
            raise InvalidTransitionError(self._state, target, reason)
        step = SchedulerTransition(self._state, target, reason)
        self._state = target
        self._history.append(step)
        return step
