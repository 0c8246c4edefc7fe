from __future__ import annotations

import asyncio
from typing import Awaitable, Callable


class TimerGroup:
    """Owns a set of event-loop timers so they can be cancelled together.

    Callbacks are coroutine factories; each firing runs as its own task.
    Tasks already running when the group is cancelled are left to finish.
    """

    def __init__(self, *, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, trigger: Callable[[], Awaitable[None]]) -> None:
        task = self._loop.create_task(trigger())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def call_later(self, name: str, delay_seconds: float, trigger: Callable[[], Awaitable[None]]) -> None:
        self.cancel(name)
        delay = max(0.0, float(delay_seconds))

        def _run() -> None:
            self._handles.pop(name, None)
            self._spawn(trigger)

        self._handles[name] = self._loop.call_later(delay, _run)

    def call_every(self, name: str, interval_seconds: float, trigger: Callable[[], Awaitable[None]]) -> None:
        self.cancel(name)
        interval = max(0.001, float(interval_seconds))

        def _run() -> None:
            # Re-arm before spawning so a slow trigger never delays the cadence.
            self._handles[name] = self._loop.call_later(interval, _run)
            self._spawn(trigger)

        self._handles[name] = self._loop.call_later(interval, _run)

    def cancel(self, name: str) -> bool:
        handle = self._handles.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def is_pending(self, name: str) -> bool:
        return name in self._handles

    @property
    def pending(self) -> tuple[str, ...]:
        return tuple(sorted(self._handles))

    @property
    def running_tasks(self) -> tuple[asyncio.Task, ...]:
        return tuple(self._tasks)
