from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal, Optional
from uuid import uuid4

from loguru import logger

from audiobook_assistant.chat import AudiobookContext, ChatClient, format_time
from audiobook_assistant.core.logging_setup import emit_event
from audiobook_assistant.media import AudioSource, load_uploaded_source, read_duration
from audiobook_assistant.playback import PlaybackController, PlaybackEngine, PlaybackState
from audiobook_assistant.runtime.context_scheduler import ContextScheduler, ContextWindow, SchedulerConfig
from audiobook_assistant.transcript_client import TranscriptClient

ChatRole = Literal["user", "assistant"]


@dataclass(frozen=True)
class ChatMessage:
    role: ChatRole
    text: str

    def to_public(self) -> dict[str, str]:
        return {"role": self.role, "content": self.text}


class PlayerSession:
    """One listener's player: audio source, playback, context scheduler and chat history."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        *,
        upload_dir: str | Path,
        transcript_client: Optional[TranscriptClient] = None,
        chat_client: Optional[ChatClient] = None,
        engine: Optional[PlaybackEngine] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
        duration_reader: Callable[[Path], Awaitable[float]] = read_duration,
    ):
        self.session_id = uuid4().hex
        self._log = logger.bind(component="session", session=self.session_id[:6])
        self._upload_dir = Path(upload_dir)
        self._transcripts = transcript_client or TranscriptClient()
        self._chat = chat_client or ChatClient()
        self._read_duration = duration_reader
        self._messages: list[ChatMessage] = []
        self._listeners: list[Callable[[], None]] = []

        self.controller = PlaybackController(engine)
        self.scheduler = ContextScheduler(
            loop=loop,
            playback=lambda: self.controller.state,
            extract=self._extract_window,
            on_change=self._changed,
            config=scheduler_config,
        )
        self.controller.add_listener(self._on_playback_event)

    @property
    def source(self) -> Optional[AudioSource]:
        return self.controller.source

    @property
    def playback(self) -> PlaybackState:
        return self.controller.state

    @property
    def context(self) -> str:
        return self.scheduler.context

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as exc:
                self._log.warning(f"Session listener failed: {exc}")

    def _on_playback_event(self, event: str, _state: PlaybackState) -> None:
        if event == "play":
            self.scheduler.start()
        elif event in {"pause", "unloaded"}:
            self.scheduler.stop(event)
        self._changed()

    async def _extract_window(self, window: ContextWindow) -> str:
        source = self.controller.source
        if source is None or source.released:
            return ""
        # Uploaded files are cut in place; only in-memory sources are spooled to disk.
        return await self._transcripts.transcribe(
            source.path or source.raw_bytes,
            start=window.start_seconds,
            end=window.end_seconds,
            filename=source.display_name,
            mime_type=source.mime_type,
        )

    async def select_upload(self, file_url: str, display_name: str | None = None) -> AudioSource:
        """Load a previously uploaded file as the current audiobook."""
        source = await load_uploaded_source(self._upload_dir, file_url, display_name)
        duration = await self._read_duration(source.path) if source.path else 0.0
        self.replace_source(source, duration)
        return source

    def replace_source(self, source: AudioSource, duration: float = 0.0) -> None:
        previous = self.controller.source
        self.scheduler.stop("file change")
        self.scheduler.clear_context()
        self.controller.load(source, duration)
        if previous is not None and previous is not source:
            previous.release()
        self._log.info(f"Now playing '{source.display_name}' (duration={duration:.1f}s)")

    def clear_source(self) -> None:
        previous = self.controller.source
        self.scheduler.stop("file change")
        self.scheduler.clear_context()
        self.controller.unload()
        if previous is not None:
            previous.release()

    def play(self) -> bool:
        return self.controller.play()

    def pause(self) -> bool:
        return self.controller.pause()

    def toggle(self) -> bool:
        return self.controller.toggle()

    def seek(self, seconds: float) -> bool:
        return self.controller.seek(seconds)

    def set_volume(self, level: float) -> None:
        self.controller.set_volume(level)

    def toggle_mute(self) -> bool:
        return self.controller.toggle_mute()

    def sync(self, position: float, duration: Optional[float] = None) -> bool:
        return self.controller.sync(position, duration)

    def audiobook_context(self) -> Optional[AudiobookContext]:
        source = self.controller.source
        if source is None:
            return None
        state = self.controller.state
        return AudiobookContext(
            file_name=source.display_name,
            current_time=state.position_seconds,
            duration=state.duration_seconds,
            is_playing=state.is_playing,
            context=self.scheduler.context,
        )

    async def chat(self, message: str) -> ChatMessage:
        text = (message or "").strip()
        if not text:
            raise ValueError("Message is empty")
        self._messages.append(ChatMessage("user", text))
        self._changed()
        audiobook = self.audiobook_context()
        reply = await self._chat.send(text, audiobook)
        emit_event(
            self._log,
            f"Chat turn {len(self._messages)} answered",
            event="session.chat",
            stage="chat",
            session_id=self.session_id,
            meta={"withContext": bool(audiobook and audiobook.context)},
        )
        answer = ChatMessage("assistant", reply)
        self._messages.append(answer)
        self._changed()
        return answer

    def snapshot(self) -> dict[str, Any]:
        source = self.controller.source
        state = self.controller.state
        window = self.scheduler.last_window
        audiobook = self.audiobook_context()
        return {
            "sessionId": self.session_id,
            "source": source.to_public() if source else None,
            "playback": {
                **state.to_public(),
                "currentTimeLabel": format_time(state.position_seconds),
                "durationLabel": format_time(state.duration_seconds),
            },
            "context": self.scheduler.context,
            "isLoadingContext": self.scheduler.in_flight,
            "scheduler": self.scheduler.state.value,
            "lastWindow": window.to_public() if window else None,
            "audiobookContext": audiobook.to_payload() if audiobook else None,
            "messages": [m.to_public() for m in self._messages],
        }

    async def aclose(self) -> None:
        await self.scheduler.aclose()
        source = self.controller.source
        if source is not None:
            source.release()
