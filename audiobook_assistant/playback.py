from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from loguru import logger

from audiobook_assistant.media import AudioSource


@dataclass(frozen=True)
class PlaybackState:
    position_seconds: float = 0.0
    duration_seconds: float = 0.0
    is_playing: bool = False
    volume: float = 1.0
    muted: bool = False

    @property
    def remaining_seconds(self) -> float:
        return max(0.0, self.duration_seconds - self.position_seconds)

    @property
    def ended(self) -> bool:
        # An unknown duration (metadata not loaded yet) never counts as the end.
        return self.duration_seconds > 0 and self.position_seconds >= self.duration_seconds

    def to_public(self) -> dict:
        data = asdict(self)
        return {
            "currentTime": data["position_seconds"],
            "duration": data["duration_seconds"],
            "isPlaying": data["is_playing"],
            "volume": data["volume"],
            "muted": data["muted"],
        }


PlaybackListener = Callable[[str, PlaybackState], None]


class PlaybackEngine:
    """Interface of the audio engine the controller drives."""

    @property
    def position(self) -> float:
        raise NotImplementedError

    @property
    def duration(self) -> float:
        raise NotImplementedError

    @property
    def is_playing(self) -> bool:
        raise NotImplementedError

    def load(self, duration: float) -> None:
        raise NotImplementedError

    def unload(self) -> None:
        raise NotImplementedError

    def play(self) -> None:
        raise NotImplementedError

    def pause(self) -> None:
        raise NotImplementedError

    def seek(self, seconds: float) -> None:
        raise NotImplementedError

    def set_volume(self, level: float) -> None:
        raise NotImplementedError

    def sync(self, position: float, duration: Optional[float] = None) -> None:
        raise NotImplementedError


class ClockPlaybackEngine(PlaybackEngine):
    """Engine that advances the position with a monotonic clock while playing.

    The browser owns the real audio output; this engine mirrors it on the
    server and is corrected by `sync()` whenever the player reports a time
    update. Playback stops by itself once the position reaches the duration.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._duration = 0.0
        self._base_position = 0.0
        self._started_at: Optional[float] = None
        self.volume = 1.0

    def _clamp(self, seconds: float) -> float:
        seconds = max(0.0, float(seconds))
        if self._duration > 0:
            seconds = min(seconds, self._duration)
        return seconds

    def _advance(self) -> float:
        if self._started_at is None:
            return self._base_position
        position = self._base_position + (self._clock() - self._started_at)
        if self._duration > 0 and position >= self._duration:
            self._base_position = self._duration
            self._started_at = None
            return self._duration
        return position

    @property
    def position(self) -> float:
        return self._advance()

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def is_playing(self) -> bool:
        self._advance()
        return self._started_at is not None

    def load(self, duration: float) -> None:
        self._duration = max(0.0, float(duration or 0.0))
        self._base_position = 0.0
        self._started_at = None

    def unload(self) -> None:
        self.load(0.0)

    def play(self) -> None:
        if self._started_at is not None:
            return
        if self._duration > 0 and self._base_position >= self._duration:
            self._base_position = 0.0
        self._started_at = self._clock()

    def pause(self) -> None:
        self._base_position = self._advance()
        self._started_at = None

    def seek(self, seconds: float) -> None:
        self._base_position = self._clamp(seconds)
        if self._started_at is not None:
            self._started_at = self._clock()

    def set_volume(self, level: float) -> None:
        self.volume = min(1.0, max(0.0, float(level)))

    def sync(self, position: float, duration: Optional[float] = None) -> None:
        if duration is not None and duration > 0:
            self._duration = float(duration)
        self.seek(position)


class PlaybackController:
    """Thin wrapper around a playback engine that notifies listeners on every change."""

    def __init__(self, engine: Optional[PlaybackEngine] = None):
        self._engine = engine or ClockPlaybackEngine()
        self._source: Optional[AudioSource] = None
        self._listeners: list[PlaybackListener] = []
        self._volume = 1.0
        self._muted = False

    @property
    def source(self) -> Optional[AudioSource]:
        return self._source

    @property
    def state(self) -> PlaybackState:
        if self._source is None:
            return PlaybackState(volume=self._volume, muted=self._muted)
        return PlaybackState(
            position_seconds=self._engine.position,
            duration_seconds=self._engine.duration,
            is_playing=self._engine.is_playing,
            volume=self._volume,
            muted=self._muted,
        )

    def add_listener(self, listener: PlaybackListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self, event: str) -> None:
        state = self.state
        for listener in list(self._listeners):
            try:
                listener(event, state)
            except Exception as exc:
                logger.warning(f"Playback listener failed on '{event}': {exc}")

    def load(self, source: AudioSource, duration: float = 0.0) -> None:
        self._source = source
        self._engine.load(duration)
        self._notify("loaded")
        if duration > 0:
            self._notify("metadata")

    def unload(self) -> None:
        if self._source is None:
            return
        self._engine.unload()
        self._source = None
        self._notify("unloaded")

    def play(self) -> bool:
        if self._source is None:
            logger.debug("play() ignored: no audio loaded")
            return False
        self._engine.play()
        self._notify("play")
        return True

    def pause(self) -> bool:
        if self._source is None:
            return False
        self._engine.pause()
        self._notify("pause")
        return True

    def toggle(self) -> bool:
        if self._source is None:
            return False
        if self._engine.is_playing:
            return self.pause()
        return self.play()

    def seek(self, seconds: float) -> bool:
        if self._source is None:
            return False
        self._engine.seek(seconds)
        self._notify("seek")
        return True

    def set_volume(self, level: float) -> None:
        self._volume = min(1.0, max(0.0, float(level)))
        self._engine.set_volume(0.0 if self._muted else self._volume)
        self._notify("volume")

    def toggle_mute(self) -> bool:
        self._muted = not self._muted
        self._engine.set_volume(0.0 if self._muted else self._volume)
        self._notify("volume")
        return self._muted

    def sync(self, position: float, duration: Optional[float] = None) -> bool:
        """Apply a time update (and optionally loaded metadata) reported by the real player."""
        if self._source is None:
            return False
        previous_duration = self._engine.duration
        self._engine.sync(position, duration)
        if self._engine.duration != previous_duration:
            self._notify("metadata")
        self._notify("timeupdate")
        return True
