import asyncio

import pytest

from audiobook_assistant.core.state_machine import SchedulerState
from audiobook_assistant.playback import PlaybackState
from audiobook_assistant.runtime.context_scheduler import (
    ContextScheduler,
    ContextWindow,
    SchedulerConfig,
    periodic_window,
)


class _FakePlayback:
    def __init__(self, position: float = 0.0, duration: float = 40.0, is_playing: bool = True):
        self.state = PlaybackState(position_seconds=position, duration_seconds=duration, is_playing=is_playing)

    def set(self, **changes) -> None:
        values = {
            "position_seconds": self.state.position_seconds,
            "duration_seconds": self.state.duration_seconds,
            "is_playing": self.state.is_playing,
        }
        values.update(changes)
        self.state = PlaybackState(**values)

    def __call__(self) -> PlaybackState:
        return self.state


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _make_scheduler(playback, extract, *, clock=None, **config):
    options = {"window_seconds": 30.0, "tick_seconds": 10.0, "final_check_seconds": 10.0}
    options.update(config)
    kwargs = {"clock": clock} if clock else {}
    return ContextScheduler(
        loop=asyncio.get_running_loop(),
        playback=playback,
        extract=extract,
        config=SchedulerConfig(**options),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_start_requests_initial_window_immediately():
    calls: list[ContextWindow] = []

    async def _extract(window: ContextWindow) -> str:
        calls.append(window)
        return "the story begins"

    sched = _make_scheduler(_FakePlayback(position=0.0, duration=40.0), _extract)
    assert sched.start() is True
    await asyncio.sleep(0.01)

    assert calls == [ContextWindow(0.0, 15.0)]
    assert sched.context == "the story begins"
    assert sched.state is SchedulerState.ARMED
    await sched.aclose()


@pytest.mark.asyncio
async def test_start_before_metadata_loaded_still_extracts():
    calls: list[ContextWindow] = []

    async def _extract(window: ContextWindow) -> str:
        calls.append(window)
        return "chapter one"

    sched = _make_scheduler(_FakePlayback(position=0.0, duration=0.0), _extract)
    assert sched.start() is True
    await asyncio.sleep(0.01)

    assert calls == [ContextWindow(0.0, 15.0)]
    assert sched.context == "chapter one"
    await sched.aclose()


@pytest.mark.asyncio
async def test_second_call_within_window_is_debounced():
    calls: list[ContextWindow] = []
    clock = _FakeClock()
    playback = _FakePlayback(position=0.0, duration=40.0)

    async def _extract(window: ContextWindow) -> str:
        calls.append(window)
        return f"text {len(calls)}"

    sched = _make_scheduler(playback, _extract, clock=clock)
    sched.start()
    await asyncio.sleep(0.01)
    assert len(calls) == 1

    clock.now += 1.0
    playback.set(position_seconds=1.0)
    assert sched.skip_reason("periodic") == "debounced"
    assert await sched.request(periodic_window(1.0, 40.0)) == ""
    assert len(calls) == 1
    assert sched.context == "text 1"

    clock.now += 30.0
    playback.set(position_seconds=31.0)
    assert await sched.request(periodic_window(31.0, 40.0)) == "text 2"
    assert calls[-1] == ContextWindow(10.0, 40.0)
    await sched.aclose()


@pytest.mark.asyncio
async def test_paused_playback_never_triggers_extraction():
    calls: list[ContextWindow] = []
    playback = _FakePlayback(position=12.0, duration=400.0, is_playing=False)

    async def _extract(window: ContextWindow) -> str:
        calls.append(window)
        return "x"

    sched = _make_scheduler(playback, _extract, tick_seconds=0.01, final_check_seconds=0.01, debounce_seconds=0.0)
    sched.start()
    await asyncio.sleep(0.08)

    assert calls == []
    assert sched.skip_reason("periodic") == "paused"
    await sched.aclose()


@pytest.mark.asyncio
async def test_ticks_after_playback_stops_are_skipped():
    calls: list[ContextWindow] = []
    playback = _FakePlayback(position=50.0, duration=400.0)

    async def _extract(window: ContextWindow) -> str:
        calls.append(window)
        return "x"

    sched = _make_scheduler(playback, _extract, tick_seconds=0.05, debounce_seconds=0.0)
    sched.start()
    await asyncio.sleep(0.01)
    playback.set(is_playing=False)
    await asyncio.sleep(0.2)

    assert calls == [ContextWindow(0.0, 15.0)]
    await sched.aclose()


@pytest.mark.asyncio
async def test_periodic_tick_uses_window_around_position():
    calls: list[ContextWindow] = []
    playback = _FakePlayback(position=30.0, duration=40.0)

    async def _extract(window: ContextWindow) -> str:
        calls.append(window)
        return "x"

    sched = _make_scheduler(playback, _extract, tick_seconds=0.03, debounce_seconds=0.0)
    sched.start()
    await asyncio.sleep(0.08)

    assert calls[0] == ContextWindow(0.0, 15.0)
    assert ContextWindow(10.0, 40.0) in calls[1:]
    await sched.aclose()


@pytest.mark.asyncio
async def test_at_most_one_extraction_in_flight():
    release = asyncio.Event()
    active = 0
    peak = 0

    async def _extract(window: ContextWindow) -> str:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await release.wait()
        active -= 1
        return "context"

    sched = _make_scheduler(_FakePlayback(position=100.0, duration=400.0), _extract, debounce_seconds=0.0)
    sched.start()
    await asyncio.sleep(0.01)
    assert sched.in_flight is True
    assert sched.state is SchedulerState.REQUESTING

    results = await asyncio.gather(*(sched.request(ContextWindow(85.0, 115.0)) for _ in range(5)))
    assert results == [""] * 5

    release.set()
    await asyncio.sleep(0.01)
    assert peak == 1
    assert sched.in_flight is False
    assert sched.state is SchedulerState.ARMED
    await sched.aclose()


@pytest.mark.asyncio
async def test_stop_discards_in_flight_result():
    release = asyncio.Event()
    contexts: list[str] = []

    async def _extract(window: ContextWindow) -> str:
        await release.wait()
        return "late transcript"

    sched = ContextScheduler(
        loop=asyncio.get_running_loop(),
        playback=_FakePlayback(position=0.0, duration=40.0),
        extract=_extract,
        on_context=contexts.append,
        config=SchedulerConfig(tick_seconds=10.0, final_check_seconds=10.0),
    )
    sched.start()
    await asyncio.sleep(0.01)
    assert sched.in_flight is True

    assert sched.stop("pause") is True
    assert sched.state is SchedulerState.IDLE
    assert sched.pending_timers == ()

    release.set()
    await asyncio.sleep(0.01)
    assert sched.in_flight is False
    assert sched.context == ""
    assert contexts == []
    assert sched.state is SchedulerState.IDLE


@pytest.mark.asyncio
async def test_failed_extraction_keeps_previous_context():
    outcomes = ["first", RuntimeError("connection reset"), ""]

    async def _extract(window: ContextWindow) -> str:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    sched = _make_scheduler(_FakePlayback(position=100.0, duration=400.0), _extract, debounce_seconds=0.0)
    sched.start()
    await asyncio.sleep(0.01)
    assert sched.context == "first"

    assert await sched.request(ContextWindow(85.0, 115.0)) == ""
    assert sched.context == "first"
    assert await sched.request(ContextWindow(85.0, 115.0)) == ""
    assert sched.context == "first"
    assert sched.state is SchedulerState.ARMED
    await sched.aclose()


@pytest.mark.asyncio
async def test_stop_cancels_all_timers():
    async def _extract(window: ContextWindow) -> str:
        return ""

    sched = _make_scheduler(_FakePlayback(position=26.0, duration=40.0), _extract, final_check_seconds=0.01)
    sched.start()
    await asyncio.sleep(0.03)
    assert sched.final_scheduled is True
    assert set(sched.pending_timers) == {"periodic", "final-check", "final"}

    sched.stop("file change")
    assert sched.pending_timers == ()
    assert sched.final_scheduled is False
    assert sched.stop("again") is False


@pytest.mark.asyncio
async def test_final_extraction_scheduled_once_near_end():
    calls: list[ContextWindow] = []
    playback = _FakePlayback(position=39.8, duration=40.0)

    async def _extract(window: ContextWindow) -> str:
        calls.append(window)
        return "the end"

    sched = _make_scheduler(playback, _extract, final_check_seconds=0.01, debounce_seconds=0.0)
    sched.start()
    await asyncio.sleep(0.03)
    # Playback reaches the end of the media on its own.
    playback.set(position_seconds=40.0, is_playing=False)
    await asyncio.sleep(0.4)

    assert calls == [ContextWindow(0.0, 15.0), ContextWindow(25.0, 40.0)]
    assert sched.context == "the end"
    assert sched.state is SchedulerState.IDLE


@pytest.mark.asyncio
async def test_final_extraction_respects_debounce():
    calls: list[ContextWindow] = []
    playback = _FakePlayback(position=39.95, duration=40.0)

    async def _extract(window: ContextWindow) -> str:
        calls.append(window)
        return "x"

    sched = _make_scheduler(playback, _extract, final_check_seconds=0.01)
    sched.start()
    await asyncio.sleep(0.15)

    assert calls == [ContextWindow(0.0, 15.0)]
    await sched.aclose()


@pytest.mark.asyncio
async def test_restart_after_pause_rearms_timers():
    calls: list[ContextWindow] = []
    playback = _FakePlayback(position=0.0, duration=40.0)

    async def _extract(window: ContextWindow) -> str:
        calls.append(window)
        return "x"

    sched = _make_scheduler(playback, _extract, debounce_seconds=0.0)
    sched.start()
    await asyncio.sleep(0.01)
    sched.stop("pause")
    assert sched.start() is True
    assert sched.start() is False
    await asyncio.sleep(0.01)

    assert calls == [ContextWindow(0.0, 15.0), ContextWindow(0.0, 15.0)]
    assert set(sched.pending_timers) == {"periodic", "final-check"}
    await sched.aclose()
