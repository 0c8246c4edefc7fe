"""
Context extraction scheduler.

While the audiobook plays, periodically asks for a transcript of the audio
around the playback position so the chat assistant knows what is being heard.
At most one extraction is outstanding; timer firings that find one in flight
are dropped, not queued.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Optional

from loguru import logger

from audiobook_assistant.config import Config
from audiobook_assistant.core.error_taxonomy import classify_exception
from audiobook_assistant.core.logging_setup import emit_event
from audiobook_assistant.core.state_machine import SchedulerState, SchedulerStateMachine
from audiobook_assistant.playback import PlaybackState
from audiobook_assistant.runtime.timers import TimerGroup

ExtractionKind = Literal["initial", "periodic", "final"]

_log = logger.bind(component="scheduler")


@dataclass(frozen=True)
class ContextWindow:
    start_seconds: float
    end_seconds: float

    def to_public(self) -> dict[str, float]:
        return {"startTime": self.start_seconds, "endTime": self.end_seconds}


@dataclass(frozen=True)
class SchedulerConfig:
    window_seconds: float = 30.0
    final_check_seconds: float = 1.0
    tick_seconds: Optional[float] = None
    debounce_seconds: Optional[float] = None

    @property
    def half_window(self) -> float:
        return self.window_seconds / 2.0

    @property
    def tick_interval(self) -> float:
        return self.window_seconds if self.tick_seconds is None else self.tick_seconds

    @property
    def debounce_interval(self) -> float:
        return self.window_seconds if self.debounce_seconds is None else self.debounce_seconds

    @classmethod
    def from_config(cls) -> "SchedulerConfig":
        return cls(
            window_seconds=float(Config.CONTEXT_WINDOW_SEC),
            final_check_seconds=float(Config.FINAL_CHECK_SEC),
        )


def initial_window(position: float, duration: float, half_window: float = 15.0) -> ContextWindow:
    """Window requested as soon as playback starts.

    Always anchored at 0, even when playback starts mid-file.
    """
    end = min(half_window, position + half_window)
    if duration > 0:
        end = min(end, duration)
    return ContextWindow(0.0, max(0.0, end))


def periodic_window(position: float, duration: float, window_seconds: float = 30.0) -> ContextWindow:
    half = window_seconds / 2.0
    start = position - half
    end = position + half
    if duration > 0 and end > duration:
        end = duration
        start = max(0.0, end - window_seconds)
    return ContextWindow(max(0.0, start), max(0.0, end))


def final_window(duration: float, half_window: float = 15.0) -> ContextWindow:
    return ContextWindow(max(0.0, duration - half_window), max(0.0, duration))


def final_delay(state: PlaybackState, half_window: float = 15.0) -> Optional[float]:
    """Seconds until the end of the media once inside the final half window, else None."""
    if state.duration_seconds <= 0 or state.ended:
        return None
    remaining = state.remaining_seconds
    if remaining <= half_window:
        return remaining
    return None


class ContextScheduler:
    """Owns the extraction timers, the in-flight flag and the debounce clock for one player."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        playback: Callable[[], PlaybackState],
        extract: Callable[[ContextWindow], Awaitable[str]],
        on_context: Optional[Callable[[str], None]] = None,
        on_change: Optional[Callable[[], None]] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loop = loop
        self._playback = playback
        self._extract = extract
        self._on_context = on_context
        self._on_change = on_change
        self._config = config or SchedulerConfig.from_config()
        self._clock = clock

        self._timers = TimerGroup(loop=loop)
        self._machine = SchedulerStateMachine()
        self._in_flight = False
        self._generation = 0
        self._last_request_at: Optional[float] = None
        self._final_scheduled = False
        self._context = ""
        self._last_window: Optional[ContextWindow] = None

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def state(self) -> SchedulerState:
        return self._machine.state

    @property
    def armed(self) -> bool:
        return self._machine.state is not SchedulerState.IDLE

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def context(self) -> str:
        return self._context

    @property
    def last_window(self) -> Optional[ContextWindow]:
        return self._last_window

    @property
    def final_scheduled(self) -> bool:
        return self._final_scheduled

    @property
    def pending_timers(self) -> tuple[str, ...]:
        return self._timers.pending

    def clear_context(self) -> None:
        if self._context:
            self._context = ""
            self._changed()

    def _changed(self) -> None:
        if not self._on_change:
            return
        try:
            self._on_change()
        except Exception as exc:
            _log.warning(f"Scheduler change listener failed: {exc}")

    def start(self) -> bool:
        """Idle -> Armed: request the initial window and start the timers."""
        if self.armed:
            return False
        self._machine.transition(SchedulerState.ARMED, "play")
        self._generation += 1
        self._final_scheduled = False

        snapshot = self._playback()
        window = initial_window(snapshot.position_seconds, snapshot.duration_seconds, self._config.half_window)
        self._timers.call_later("initial", 0.0, lambda: self.request(window, kind="initial"))
        self._timers.call_every("periodic", self._config.tick_interval, self._on_tick)
        self._timers.call_every("final-check", self._config.final_check_seconds, self._on_final_check)
        _log.debug(f"Scheduler armed (generation={self._generation}, position={snapshot.position_seconds:.2f}s)")
        self._changed()
        return True

    def stop(self, reason: str = "pause") -> bool:
        """Armed -> Idle: cancel every timer; an in-flight result will be discarded."""
        if not self.armed:
            return False
        self._timers.cancel_all()
        self._generation += 1
        self._final_scheduled = False
        self._machine.transition(SchedulerState.IDLE, reason)
        _log.debug(f"Scheduler idle ({reason}); in_flight={self._in_flight}")
        self._changed()
        return True

    async def aclose(self) -> None:
        self.stop("teardown")
        tasks = self._timers.running_tasks
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def skip_reason(self, kind: ExtractionKind) -> Optional[str]:
        if not self.armed:
            return "idle"
        if kind != "final":
            snapshot = self._playback()
            if not snapshot.is_playing:
                return "paused"
            if snapshot.ended:
                return "ended"
        if self._in_flight:
            return "in_flight"
        if self._last_request_at is not None:
            if self._clock() - self._last_request_at < self._config.debounce_interval:
                return "debounced"
        return None

    async def request(self, window: ContextWindow, *, kind: ExtractionKind = "periodic") -> str:
        reason = self.skip_reason(kind)
        if reason:
            _log.debug(f"Skipping {kind} extraction {window.start_seconds:.2f}s-{window.end_seconds:.2f}s: {reason}")
            return ""

        generation = self._generation
        self._in_flight = True
        self._last_request_at = self._clock()
        self._last_window = window
        self._machine.transition(SchedulerState.REQUESTING, kind)
        self._changed()

        started = time.perf_counter()
        text = ""
        try:
            text = await self._extract(window)
        except Exception as exc:
            category = classify_exception(exc)
            emit_event(
                _log,
                f"Context extraction failed: {exc}",
                level="WARNING",
                event="context.extract",
                stage="context",
                outcome="error",
                error_category=category.value,
            )
            text = ""
        finally:
            self._in_flight = False

        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        if generation != self._generation:
            emit_event(
                _log,
                f"Discarding stale {kind} extraction result",
                level="DEBUG",
                event="context.extract",
                stage="context",
                duration_ms=duration_ms,
                outcome="stale",
            )
            self._changed()
            return ""

        self._machine.transition(SchedulerState.ARMED, "settled")
        if text:
            self._context = text
            if self._on_context:
                self._on_context(text)
        emit_event(
            _log,
            f"{kind.capitalize()} extraction {window.start_seconds:.2f}s-{window.end_seconds:.2f}s -> {len(text)} chars",
            event="context.extract",
            stage="context",
            duration_ms=duration_ms,
            outcome="ok" if text else "empty",
            meta={"kind": kind, **window.to_public()},
        )
        self._changed()
        return text

    async def _on_tick(self) -> None:
        snapshot = self._playback()
        if snapshot.ended:
            return
        window = periodic_window(snapshot.position_seconds, snapshot.duration_seconds, self._config.window_seconds)
        await self.request(window, kind="periodic")

    async def _on_final_check(self) -> None:
        if self._final_scheduled:
            return
        snapshot = self._playback()
        delay = final_delay(snapshot, self._config.half_window)
        if delay is None:
            return
        self._final_scheduled = True
        window = final_window(snapshot.duration_seconds, self._config.half_window)
        _log.debug(f"Final extraction {window.start_seconds:.2f}s-{window.end_seconds:.2f}s scheduled in {delay:.2f}s")
        self._timers.call_later("final", delay, lambda: self._run_final(window))

    async def _run_final(self, window: ContextWindow) -> None:
        generation = self._generation
        await self.request(window, kind="final")
        # Playback stopped at the end of the media: nothing left to schedule.
        if generation == self._generation and not self._playback().is_playing:
            self.stop("ended")
