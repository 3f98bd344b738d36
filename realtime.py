"""Hosted real-time conversation session using DashScope Qwen-Omni realtime.

The conversation is a websocket owned by ``OmniRealtimeConversation``.  Audio
is pushed with ``append_audio`` from a sender thread fed by a single-slot
queue, so ``send_audio_frame`` never blocks the capture thread.  Server events
arrive on the SDK's callback thread and are translated into ``RemoteEvent``
values that ``events()`` yields lazily until the session ends.
"""

from __future__ import annotations

import base64
import logging
import threading
from queue import Empty, Full, Queue
from typing import Any, Iterator, Optional, Sequence

from errors import AuthError, RemoteConnectionError, VoiceSessionError
from models import AudioFrame, RemoteEvent, RemoteEventKind

try:
    from dashscope.audio.qwen_omni import (
        AudioFormat,
        MultiModality,
        OmniRealtimeCallback,
        OmniRealtimeConversation,
    )
except Exception:  # pragma: no cover
    AudioFormat = None  # type: ignore
    MultiModality = None  # type: ignore
    OmniRealtimeCallback = object  # type: ignore
    OmniRealtimeConversation = None  # type: ignore

logger = logging.getLogger(__name__)

if OmniRealtimeConversation is not None:

    class RecordingConversation(OmniRealtimeConversation):
        """Keeps the websocket error that the SDK only logs.

        A rejected handshake surfaces from ``connect()`` as a plain timeout;
        the recorded error still carries the HTTP status.
        """

        def __init__(self, *args: Any, **kwargs: Any) -> None:
            super().__init__(*args, **kwargs)
            self.ws_error: Optional[Exception] = None

        def _on_error(self, ws: Any, error: Exception) -> None:
            self.ws_error = error
            super()._on_error(ws, error)

else:  # pragma: no cover
    RecordingConversation = None  # type: ignore

_DELTA_EVENTS = ("response.text.delta", "response.audio_transcript.delta")
_DONE_EVENTS = {
    "response.text.done": "text",
    "response.audio_transcript.done": "transcript",
}


def classify_error(exc: Exception, ws_error: Optional[Exception] = None) -> VoiceSessionError:
    """Map an SDK/network exception to AuthError or RemoteConnectionError.

    ``ws_error`` is the websocket error seen during the handshake, if any.
    """
    if isinstance(exc, VoiceSessionError):
        return exc
    status = getattr(ws_error, "status_code", None)
    if status in (401, 403):
        return AuthError(f"handshake rejected with HTTP {status}: {ws_error}")
    cause = ws_error if ws_error is not None else exc
    message = str(cause) or cause.__class__.__name__
    low = message.lower()
    if "401" in low or "403" in low or "auth" in low or "api key" in low or "apikey" in low:
        return AuthError(message)
    return RemoteConnectionError(message)


class _CallbackBridge(OmniRealtimeCallback):
    def __init__(self, session: "DashscopeRealtimeSession") -> None:
        super().__init__()
        self._session = session

    def on_open(self) -> None:
        logger.debug("Realtime websocket opened")

    def on_close(self, close_status_code: Any, close_msg: Any) -> None:
        self._session._handle_close(close_status_code, close_msg)

    def on_event(self, response: Any) -> None:
        self._session._handle_server_event(response)


class DashscopeRealtimeSession:
    def __init__(
        self,
        model: str,
        voice: str,
        url: Optional[str] = None,
        output_modalities: Sequence[str] = ("text",),
        input_sample_rate: int = 16000,
    ) -> None:
        self._model = model
        self._voice = voice
        self._url = url
        self._output_modalities = tuple(output_modalities)
        self._input_sample_rate = input_sample_rate

        self._lock = threading.Lock()
        self._conversation: Any = None
        self._connected = False
        self._closing = False
        self._events: Queue[RemoteEvent | None] = Queue()
        self._outgoing: Queue[AudioFrame | None] = Queue(maxsize=1)
        self._sender: Optional[threading.Thread] = None
        self._response_text = ""
        self.dropped_frames = 0

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self, credential: str) -> None:
        if not credential:
            raise AuthError("No API key configured")
        if RecordingConversation is None:
            raise RemoteConnectionError("dashscope is not installed", retryable=False)

        with self._lock:
            if self._closing:
                raise RemoteConnectionError("connection cancelled", retryable=False)
            options: dict = {"api_key": credential}
            if self._url:
                options["url"] = self._url
            conversation = RecordingConversation(
                model=self._model,
                callback=_CallbackBridge(self),
                **options,
            )
            self._conversation = conversation

        try:
            conversation.connect()
            conversation.update_session(
                output_modalities=self._modalities(),
                voice=self._voice,
                input_audio_format=AudioFormat.PCM_16000HZ_MONO_16BIT,
                enable_input_audio_transcription=False,
                enable_turn_detection=True,
                turn_detection_type="server_vad",
            )
        except Exception as exc:
            self._close_conversation()
            if self._closing:
                raise RemoteConnectionError("connection cancelled", retryable=False) from exc
            raise classify_error(exc, getattr(conversation, "ws_error", None)) from exc

        with self._lock:
            cancelled = self._closing
            if not cancelled:
                self._connected = True
                self._sender = threading.Thread(target=self._send_loop, daemon=True)
                self._sender.start()
        if cancelled:
            # disconnect() may have run before the websocket existed
            self._close_conversation()
            raise RemoteConnectionError("connection cancelled", retryable=False)
        logger.info("Realtime session connected (model=%s)", self._model)

    def send_audio_frame(self, frame: AudioFrame) -> None:
        if not self._connected or self._closing:
            return
        try:
            self._outgoing.put_nowait(frame)
        except Full:
            self.dropped_frames += 1

    def events(self) -> Iterator[RemoteEvent]:
        while True:
            event = self._events.get()
            if event is None:  # Sentinel
                return
            yield event

    def disconnect(self) -> None:
        with self._lock:
            if self._closing:
                return
            self._closing = True
            self._connected = False
        try:
            self._outgoing.put_nowait(None)
        except Full:
            pass  # sender sees the closing flag on its next poll
        self._close_conversation()
        self._events.put(None)
        if self._sender and self._sender.is_alive() and self._sender is not threading.current_thread():
            self._sender.join(timeout=0.5)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _modalities(self) -> list:
        return [
            MultiModality.AUDIO if name == "audio" else MultiModality.TEXT
            for name in self._output_modalities
        ]

    def _send_loop(self) -> None:
        while not self._closing:
            try:
                frame = self._outgoing.get(timeout=0.2)
            except Empty:
                continue
            if frame is None:  # Sentinel
                return
            payload = base64.b64encode(frame.pcm16_bytes).decode("ascii")
            try:
                self._conversation.append_audio(payload)
            except Exception as exc:
                self.dropped_frames += 1
                logger.debug("Dropped audio frame: %s", exc)

    def _close_conversation(self) -> None:
        conversation = self._conversation
        if conversation is None:
            return
        try:
            conversation.close()
        except Exception:
            logger.debug("Realtime conversation close failed", exc_info=True)

    def _handle_close(self, code: Any, message: Any) -> None:
        if self._closing:
            return
        with self._lock:
            was_connected = self._connected
            self._connected = False
        if was_connected:
            reason = f"{code}: {message}" if message else str(code)
            logger.warning("Realtime websocket closed by server (%s)", reason)
            self._events.put(RemoteEvent(kind=RemoteEventKind.DISCONNECTED, reason=reason))
            self._events.put(None)

    def _handle_server_event(self, response: Any) -> None:
        if not isinstance(response, dict):
            return
        kind = response.get("type", "")
        if kind == "response.created":
            self._response_text = ""
        elif kind in _DELTA_EVENTS:
            self._response_text += str(response.get("delta", ""))
            self._events.put(
                RemoteEvent(kind=RemoteEventKind.PARTIAL_RESPONSE, text=self._response_text)
            )
        elif kind in _DONE_EVENTS:
            text = str(response.get(_DONE_EVENTS[kind], "")) or self._response_text
            self._response_text = ""
            self._events.put(RemoteEvent(kind=RemoteEventKind.FINAL_RESPONSE, text=text))
        elif kind == "error":
            error = response.get("error", {})
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            logger.warning("Realtime server error: %s", message)


class DashscopeRealtimeService:
    def __init__(
        self,
        model: str = "qwen-omni-turbo-realtime-latest",
        voice: str = "Chelsie",
        url: Optional[str] = None,
        output_modalities: Sequence[str] = ("text",),
    ) -> None:
        self._model = model
        self._voice = voice
        self._url = url
        self._output_modalities = tuple(output_modalities)

    def create_session(self) -> DashscopeRealtimeSession:
        return DashscopeRealtimeSession(
            model=self._model,
            voice=self._voice,
            url=self._url,
            output_modalities=self._output_modalities,
        )
