import asyncio
import json
import re
import signal
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlparse
from uuid import uuid4

from aiohttp import BodyPartReader, ClientSession, ClientTimeout, WSMsgType, hdrs, web
from loguru import logger

from audiobook_assistant.chat import AudiobookContext, ChatClient
from audiobook_assistant.config import Config
from audiobook_assistant.core.error_taxonomy import UploadError, classify_exception
from audiobook_assistant.core.logging_setup import emit_event, setup_logging
from audiobook_assistant.media import UPLOADS_URL_PREFIX, is_audio_file
from audiobook_assistant.runtime.context_scheduler import SchedulerConfig
from audiobook_assistant.session import PlayerSession
from audiobook_assistant.transcript_client import TranscriptClient

CHAT_ERROR_MESSAGE = "Failed to process your request"

_INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

_log = logger.bind(component="web")


_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _upload_display_name(raw: Optional[str], fallback: str = "audiobook") -> str:
    """Turn a multipart filename into a plain display name.

    Browsers and aiohttp clients may percent-encode the filename, and it may
    carry a client-side directory; only the decoded base name is kept.
    """
    name = unquote(raw or "").strip().replace("\\", "/").rsplit("/", 1)[-1]
    name = _INVALID_FILENAME_CHARS.sub("_", name).rstrip(" .")
    return name if name and name not in {".", ".."} else fallback


def _origin_allowed(origin: str, allowed: Optional[list[str]] = None) -> bool:
    origin = (origin or "").strip().rstrip("/")
    if not origin:
        return False
    allowed = Config.ALLOWED_ORIGINS if allowed is None else allowed
    if allowed:
        return "*" in allowed or origin in allowed
    parsed = urlparse(origin)
    return parsed.scheme in {"http", "https"} and parsed.hostname in _LOCAL_HOSTS


def _too_large_message(limit_bytes: int) -> str:
    return f"File too large (max {limit_bytes / (1024 * 1024):g} MB)."


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _read_json(request: web.Request) -> Optional[dict[str, Any]]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _number(payload: dict[str, Any], key: str) -> float:
    value = payload.get(key)
    if isinstance(value, bool):
        raise ValueError(f"Invalid {key}: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid {key}: {value!r}")


async def _read_part(part: BodyPartReader, max_bytes: int) -> Optional[bytes]:
    """Read a multipart field into memory; None when it exceeds `max_bytes`."""
    data = bytearray()
    while True:
        chunk = await part.read_chunk(size=1024 * 1024)
        if not chunk:
            break
        data.extend(chunk)
        if len(data) > max_bytes:
            return None
    return bytes(data)


class AudiobookWebController:
    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        *,
        upload_dir: Optional[str | Path] = None,
        transcript_client: Optional[TranscriptClient] = None,
        chat_client: Optional[ChatClient] = None,
        session: Optional[PlayerSession] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
    ):
        self._loop = loop
        self._clients: set[web.WebSocketResponse] = set()
        self._clients_lock = asyncio.Lock()
        self._pending_broadcast = False

        self.upload_dir = Path(upload_dir or Config.UPLOAD_DIR).resolve()
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.transcripts = transcript_client or TranscriptClient()
        self.chat = chat_client or ChatClient()
        self.session = session or PlayerSession(
            loop,
            upload_dir=self.upload_dir,
            transcript_client=self.transcripts,
            chat_client=self.chat,
            scheduler_config=scheduler_config,
        )
        self.session.add_listener(self._on_session_changed)

    def get_state(self) -> dict[str, Any]:
        return self.session.snapshot()

    async def add_client(self, ws: web.WebSocketResponse) -> None:
        async with self._clients_lock:
            self._clients.add(ws)

    async def remove_client(self, ws: web.WebSocketResponse) -> None:
        async with self._clients_lock:
            self._clients.discard(ws)

    async def broadcast(self, payload: dict[str, Any]) -> None:
        msg = json.dumps(payload, ensure_ascii=False)
        async with self._clients_lock:
            clients = list(self._clients)
        if not clients:
            return

        async def send_safe(ws: web.WebSocketResponse):
            """Send message to client, return ws if failed or closed."""
            if ws.closed:
                return ws
            try:
                await ws.send_str(msg)
                return None
            except (ConnectionError, RuntimeError):
                return ws

        results = await asyncio.gather(*[send_safe(ws) for ws in clients], return_exceptions=True)
        dead = [r for r in results if isinstance(r, web.WebSocketResponse)]
        if dead:
            async with self._clients_lock:
                for ws in dead:
                    self._clients.discard(ws)

    def _on_session_changed(self) -> None:
        # Several changes in one loop iteration collapse into a single state push.
        if self._pending_broadcast:
            return
        self._pending_broadcast = True

        def _flush() -> None:
            self._pending_broadcast = False
            self._loop.create_task(self.broadcast({"type": "state", **self.get_state()}))

        self._loop.call_soon(_flush)

    async def save_upload(self, part: BodyPartReader, max_bytes: int) -> dict[str, str]:
        """Stream an uploaded audio file to disk under a random name."""
        display_name = _upload_display_name(part.filename)
        content_type = part.headers.get(hdrs.CONTENT_TYPE, "")
        if not is_audio_file(display_name, content_type):
            raise UploadError("Please select an audio file")

        ext = Path(display_name).suffix.lower()
        stored_name = f"{uuid4()}{ext}"
        save_path = self.upload_dir / stored_name

        bytes_read = 0
        too_large = False
        with open(save_path, "wb") as f:
            while True:
                chunk = await part.read_chunk(size=1024 * 1024)  # 1MB chunks
                if not chunk:
                    break
                bytes_read += len(chunk)
                if bytes_read > max_bytes:
                    too_large = True
                    break
                f.write(chunk)

        if too_large or bytes_read == 0:
            try:
                save_path.unlink(missing_ok=True)
            except OSError as cleanup_err:
                _log.warning(f"Failed to cleanup rejected upload: {cleanup_err}")
            if too_large:
                raise UploadError(_too_large_message(max_bytes))
            raise UploadError("Uploaded file is empty")

        _log.info(f"Stored upload '{display_name}' as {stored_name} ({bytes_read} bytes)")
        return {"fileUrl": f"{UPLOADS_URL_PREFIX}{stored_name}", "filename": display_name}

    async def close(self) -> None:
        await self.session.aclose()
        async with self._clients_lock:
            clients = list(self._clients)
            self._clients.clear()
        for ws in clients:
            await ws.close()


@web.middleware
async def cors_middleware(request: web.Request, handler):
    origin = request.headers.get("Origin")
    if origin and not _origin_allowed(origin):
        return _error("Origin not allowed", 403)

    if request.method == "OPTIONS":
        resp = web.Response(status=204)
    else:
        try:
            resp = await handler(request)
        except web.HTTPException as exc:
            resp = exc

    if origin:
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Credentials"] = "true"
    else:
        resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET,POST,DELETE,OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    return resp


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        _log.exception(f"Unhandled error in {request.method} {request.path}")
        emit_event(
            _log,
            f"Request failed: {exc}",
            level="ERROR",
            event="http.error",
            stage="http",
            outcome="error",
            error_category=classify_exception(exc).value,
        )
        return _error("Internal server error", 500)


def create_app(controller: AudiobookWebController) -> web.Application:
    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app["controller"] = controller

    async def http_session_ctx(app_: web.Application):
        timeout = ClientTimeout(total=Config.TIMEOUT_TRANSCRIBE_SEC)
        session = ClientSession(timeout=timeout)
        app_["http_session"] = session
        controller.transcripts.attach_session(session)
        yield
        await controller.close()
        controller.transcripts.attach_session(None)
        await session.close()

    app.cleanup_ctx.append(http_session_ctx)

    async def health(_request: web.Request):
        return web.json_response({"ok": True})

    async def ws_handler(request: web.Request):
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        ctl: AudiobookWebController = request.app["controller"]
        await ctl.add_client(ws)
        await ws.send_str(json.dumps({"type": "state", **ctl.get_state()}, ensure_ascii=False))

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    # Server -> client only. Keep the connection alive.
                    if msg.data == "ping":
                        await ws.send_str("pong")
                elif msg.type == WSMsgType.ERROR:
                    break
        finally:
            await ctl.remove_client(ws)
        return ws

    async def upload(request: web.Request):
        ctl: AudiobookWebController = request.app["controller"]
        if not request.content_type.startswith("multipart/"):
            return _error("Expected multipart/form-data", 400)

        max_bytes = Config.UPLOAD_MAX_BYTES
        if request.content_length is not None and request.content_length > max_bytes:
            return _error(_too_large_message(max_bytes), 413)

        try:
            reader = await request.multipart()
            async for part in reader:
                if isinstance(part, BodyPartReader) and part.name == "file":
                    result = await ctl.save_upload(part, max_bytes)
                    return web.json_response(result)
        except UploadError as exc:
            status = 413 if "too large" in str(exc).lower() else 400
            return _error(str(exc), status)
        except Exception:
            _log.exception("Upload error")
            return _error("Failed to upload file", 500)
        return _error("No file uploaded", 400)

    async def extract_text(request: web.Request):
        ctl: AudiobookWebController = request.app["controller"]
        max_bytes = Config.UPLOAD_MAX_BYTES
        audio: Optional[bytes] = None
        filename = "audio.mp3"
        mime_type: Optional[str] = None
        fields: dict[str, str] = {}

        if not request.content_type.startswith("multipart/"):
            # A urlencoded (or empty) form has no file part.
            await request.post()
            return _error("No audio file provided", 400)

        reader = await request.multipart()
        async for part in reader:
            if not isinstance(part, BodyPartReader):
                continue
            if part.name == "audio":
                filename = _upload_display_name(part.filename, filename)
                mime_type = part.headers.get(hdrs.CONTENT_TYPE) or None
                audio = await _read_part(part, max_bytes)
                if audio is None:
                    return _error(_too_large_message(max_bytes), 413)
            elif part.name in {"startTime", "endTime"}:
                fields[part.name] = (await part.text()).strip()

        if not audio:
            return _error("No audio file provided", 400)

        try:
            text = await ctl.transcripts.extract_text(
                audio,
                start=fields.get("startTime", ""),
                end=fields.get("endTime", ""),
                filename=filename,
                mime_type=mime_type,
            )
        except ValueError as exc:
            return _error(str(exc), 400)
        except Exception as exc:
            emit_event(
                _log,
                f"Error processing audio: {exc}",
                level="ERROR",
                event="transcript.extract",
                stage="transcribe",
                outcome="error",
                error_category=classify_exception(exc).value,
            )
            return _error(str(exc) or "Failed to extract text", 500)
        return web.json_response({"text": text})

    async def chat(request: web.Request):
        ctl: AudiobookWebController = request.app["controller"]
        payload = await _read_json(request)
        if payload is None:
            return _error("Invalid JSON", 400)
        message = payload.get("message")
        if not isinstance(message, str) or not message.strip():
            return _error("Missing message", 400)
        try:
            context = AudiobookContext.from_payload(payload.get("audiobookContext"))
        except ValueError as exc:
            return _error(str(exc), 400)

        try:
            reply = await ctl.chat.complete(message, context)
        except Exception as exc:
            emit_event(
                _log,
                f"Chat error: {exc}",
                level="ERROR",
                event="chat.complete",
                stage="chat",
                provider=ctl.chat.model,
                outcome="error",
                error_category=classify_exception(exc).value,
            )
            return _error(CHAT_ERROR_MESSAGE, 500)
        return web.json_response({"message": reply})

    async def session_state(request: web.Request):
        ctl: AudiobookWebController = request.app["controller"]
        return web.json_response(ctl.get_state())

    async def session_select(request: web.Request):
        ctl: AudiobookWebController = request.app["controller"]
        payload = await _read_json(request)
        if payload is None:
            return _error("Invalid JSON", 400)
        try:
            await ctl.session.select_upload(str(payload.get("fileUrl") or ""), payload.get("filename"))
        except FileNotFoundError as exc:
            return _error(str(exc), 404)
        except UploadError as exc:
            return _error(str(exc), 400)
        return web.json_response(ctl.get_state())

    async def session_clear(request: web.Request):
        ctl: AudiobookWebController = request.app["controller"]
        ctl.session.clear_source()
        return web.json_response(ctl.get_state())

    def _playback_action(action: str):
        async def handler(request: web.Request):
            ctl: AudiobookWebController = request.app["controller"]
            if action == "mute":
                ctl.session.toggle_mute()
                return web.json_response(ctl.get_state())
            if ctl.session.source is None:
                return _error("No audiobook loaded", 409)
            getattr(ctl.session, action)()
            return web.json_response(ctl.get_state())

        return handler

    async def session_seek(request: web.Request):
        ctl: AudiobookWebController = request.app["controller"]
        payload = await _read_json(request)
        if payload is None:
            return _error("Invalid JSON", 400)
        try:
            position = _number(payload, "position")
        except ValueError as exc:
            return _error(str(exc), 400)
        if not ctl.session.seek(position):
            return _error("No audiobook loaded", 409)
        return web.json_response(ctl.get_state())

    async def session_volume(request: web.Request):
        ctl: AudiobookWebController = request.app["controller"]
        payload = await _read_json(request)
        if payload is None:
            return _error("Invalid JSON", 400)
        try:
            level = _number(payload, "level")
        except ValueError as exc:
            return _error(str(exc), 400)
        ctl.session.set_volume(level)
        return web.json_response(ctl.get_state())

    async def session_sync(request: web.Request):
        ctl: AudiobookWebController = request.app["controller"]
        payload = await _read_json(request)
        if payload is None:
            return _error("Invalid JSON", 400)
        try:
            position = _number(payload, "currentTime")
            duration = _number(payload, "duration") if payload.get("duration") is not None else None
        except ValueError as exc:
            return _error(str(exc), 400)
        if not ctl.session.sync(position, duration):
            return _error("No audiobook loaded", 409)
        return web.json_response(ctl.get_state())

    async def session_chat(request: web.Request):
        ctl: AudiobookWebController = request.app["controller"]
        payload = await _read_json(request)
        if payload is None:
            return _error("Invalid JSON", 400)
        message = payload.get("message")
        if not isinstance(message, str) or not message.strip():
            return _error("Missing message", 400)
        answer = await ctl.session.chat(message)
        return web.json_response(
            {"message": answer.text, "messages": [m.to_public() for m in ctl.session.messages]}
        )

    app.router.add_get("/api/health", health)
    app.router.add_get("/ws", ws_handler)

    app.router.add_post("/api/upload", upload)
    app.router.add_post("/api/extract-text", extract_text)
    app.router.add_post("/api/transcribe", extract_text)
    app.router.add_post("/api/chat", chat)

    app.router.add_get("/api/session", session_state)
    app.router.add_post("/api/session/source", session_select)
    app.router.add_delete("/api/session/source", session_clear)
    for action in ("play", "pause", "toggle", "mute"):
        app.router.add_post(f"/api/session/{action}", _playback_action(action))
    app.router.add_post("/api/session/seek", session_seek)
    app.router.add_post("/api/session/volume", session_volume)
    app.router.add_post("/api/session/sync", session_sync)
    app.router.add_post("/api/session/chat", session_chat)

    app.router.add_static(UPLOADS_URL_PREFIX.rstrip("/"), controller.upload_dir)

    return app


async def run_server(host: str, port: int) -> None:
    loop = asyncio.get_running_loop()
    controller = AudiobookWebController(loop)

    app = create_app(controller)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()
    _log.info(f"Audiobook assistant listening on http://{host}:{port} (ws://{host}:{port}/ws)")

    stop_event = asyncio.Event()

    def _request_stop(*_args: Any) -> None:
        loop.call_soon_threadsafe(stop_event.set)

    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", signal.SIGINT)):
        try:
            signal.signal(sig, _request_stop)
        except (ValueError, OSError):  # pragma: no cover - platform dependent
            pass

    await stop_event.wait()
    await runner.cleanup()


def main() -> None:
    setup_logging(component="web")
    asyncio.run(run_server(Config.WEB_HOST, Config.WEB_PORT))


if __name__ == "__main__":
    main()
