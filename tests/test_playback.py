from audiobook_assistant.media import AudioSource
from audiobook_assistant.playback import ClockPlaybackEngine, PlaybackController, PlaybackState


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _source(name: str = "book.mp3") -> AudioSource:
    return AudioSource(raw_bytes=b"ID3data", mime_type="audio/mpeg", display_name=name, playable_handle=f"/uploads/{name}")


def test_playback_state_public_shape():
    state = PlaybackState(position_seconds=12.5, duration_seconds=60.0, is_playing=True, volume=0.5)
    assert state.to_public() == {
        "currentTime": 12.5,
        "duration": 60.0,
        "isPlaying": True,
        "volume": 0.5,
        "muted": False,
    }
    assert state.remaining_seconds == 47.5
    assert state.ended is False


def test_unknown_duration_is_not_ended():
    state = PlaybackState(position_seconds=0.0, duration_seconds=0.0, is_playing=True)
    assert state.ended is False
    assert PlaybackState(position_seconds=12.0, duration_seconds=0.0).ended is False


def test_clock_engine_advances_and_stops_at_end():
    clock = _Clock()
    engine = ClockPlaybackEngine(clock)
    engine.load(10.0)
    engine.play()

    clock.now = 4.0
    assert engine.position == 4.0
    assert engine.is_playing is True

    clock.now = 25.0
    assert engine.position == 10.0
    assert engine.is_playing is False

    # Playing again after the end restarts from the beginning.
    engine.play()
    clock.now = 26.0
    assert engine.position == 1.0


def test_clock_engine_pause_and_seek_clamp():
    clock = _Clock()
    engine = ClockPlaybackEngine(clock)
    engine.load(30.0)
    engine.play()
    clock.now = 5.0
    engine.pause()
    clock.now = 20.0
    assert engine.position == 5.0

    engine.seek(100.0)
    assert engine.position == 30.0
    engine.seek(-3.0)
    assert engine.position == 0.0


def test_controller_without_source_ignores_transport():
    controller = PlaybackController(ClockPlaybackEngine(_Clock()))
    events = []
    controller.add_listener(lambda event, state: events.append(event))

    assert controller.play() is False
    assert controller.pause() is False
    assert controller.toggle() is False
    assert controller.seek(5.0) is False
    assert controller.sync(3.0, 10.0) is False
    assert events == []
    assert controller.state.is_playing is False


def test_controller_emits_events_in_order():
    clock = _Clock()
    controller = PlaybackController(ClockPlaybackEngine(clock))
    events = []
    remove = controller.add_listener(lambda event, state: events.append((event, state.is_playing)))

    controller.load(_source(), 120.0)
    assert controller.toggle() is True
    clock.now = 2.0
    assert controller.toggle() is True
    remove()
    controller.play()

    assert events == [
        ("loaded", False),
        ("metadata", False),
        ("play", True),
        ("pause", False),
    ]


def test_controller_sync_reports_new_duration_once():
    controller = PlaybackController(ClockPlaybackEngine(_Clock()))
    events = []
    controller.add_listener(lambda event, state: events.append(event))
    controller.load(_source(), 0.0)

    controller.sync(1.0, 90.0)
    controller.sync(2.0, 90.0)

    assert events == ["loaded", "metadata", "timeupdate", "timeupdate"]
    assert controller.state.duration_seconds == 90.0
    assert controller.state.position_seconds == 2.0


def test_controller_volume_and_mute():
    controller = PlaybackController(ClockPlaybackEngine(_Clock()))
    controller.set_volume(1.7)
    assert controller.state.volume == 1.0
    controller.set_volume(0.25)
    assert controller.toggle_mute() is True
    assert controller.state.muted is True
    assert controller.state.volume == 0.25
    assert controller.toggle_mute() is False


def test_listener_errors_do_not_break_notifications():
    controller = PlaybackController(ClockPlaybackEngine(_Clock()))
    seen = []

    def _broken(event, state):
        raise RuntimeError("listener exploded")

    controller.add_listener(_broken)
    controller.add_listener(lambda event, state: seen.append(event))
    controller.load(_source(), 5.0)

    assert seen == ["loaded", "metadata"]


def test_unload_clears_source():
    controller = PlaybackController(ClockPlaybackEngine(_Clock()))
    events = []
    controller.add_listener(lambda event, state: events.append(event))
    controller.load(_source(), 5.0)
    controller.unload()
    controller.unload()

    assert controller.source is None
    assert events == ["loaded", "metadata", "unloaded"]
