"""State-machine based voice session orchestration.

One microphone tap feeds two pipelines: on-device transcription and a hosted
real-time conversation.  All state and published fields are mutated while
holding ``self._lock``; callbacks from worker threads carry the session id
they were started with and are dropped once a newer session (or a teardown)
has superseded it.
"""

from __future__ import annotations

import logging
import threading
from functools import partial
from typing import Callable, Optional

from capture import FrameStream
from errors import (
    CaptureError,
    RecognitionError,
    RemoteConnectionError,
    UnexpectedDisconnect,
    VoiceSessionError,
)
from interfaces import (
    AudioCaptureSource,
    LocalTranscriptionEngine,
    RemoteConversationService,
    RemoteConversationSession,
    TranscriptionHandle,
)
from models import RemoteEventKind, SessionSnapshot, SessionState, TranscriptUpdate

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
ErrorCallback = Callable[[str, str], None]
SnapshotListener = Callable[[SessionSnapshot], None]

STATUS_READY = "Ready"
STATUS_CONNECTING = "Connecting…"
STATUS_LISTENING = "Listening…"
STATUS_STOPPING = "Stopping…"


class SessionCoordinator:
    def __init__(
        self,
        capture: AudioCaptureSource,
        local_engine: LocalTranscriptionEngine,
        remote_service: RemoteConversationService,
        credential: str,
        on_state_change: Optional[StateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._capture = capture
        self._local_engine = local_engine
        self._remote_service = remote_service
        self._credential = credential
        self._on_state_change = on_state_change
        self._on_error = on_error

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._status = STATUS_READY
        self._transcript = ""
        self._last_response = ""
        self._session_id = 0
        self._listeners: list[SnapshotListener] = []

        self._stream: Optional[FrameStream] = None
        self._local_handle: Optional[TranscriptionHandle] = None
        self._remote: Optional[RemoteConversationSession] = None
        self._remote_unsubscribe: Optional[Callable[[], None]] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> str:
        return self._status

    @property
    def transcript(self) -> str:
        return self._transcript

    @property
    def last_response(self) -> str:
        return self._last_response

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                state=self._state,
                status=self._status,
                transcript=self._transcript,
                last_response=self._last_response,
            )

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    def toggle(self) -> None:
        with self._lock:
            state = self._state
        if state in (SessionState.IDLE, SessionState.ERROR):
            self.start()
        elif state == SessionState.LISTENING:
            self.stop()
        else:
            logger.debug("toggle ignored while %s", state.value)

    def start(self) -> None:
        """Acquire the microphone and bring both pipelines up.

        Returns once the session is listening, has failed, or was cancelled
        by a concurrent ``stop``.  The remote connect runs outside the lock.
        """
        with self._lock:
            if self._state not in (SessionState.IDLE, SessionState.ERROR):
                logger.debug("start ignored while %s", self._state.value)
                return
            self._session_id += 1
            session_id = self._session_id
            self._transcript = ""
            self._last_response = ""

            stream = FrameStream()
            self._stream = stream
            self._begin_local(session_id, stream)
            try:
                self._capture.start(stream)
            except CaptureError as exc:
                logger.warning("Microphone unavailable: %s", exc)
                self._cancel_local()
                self._stream = None
                stream.close()
                self._transition(SessionState.IDLE, exc.user_message)
                self._emit_error(exc)
                return

            remote = self._remote_service.create_session()
            self._remote = remote
            self._transition(SessionState.STARTING, STATUS_CONNECTING)

        try:
            remote.connect(self._credential)
        except VoiceSessionError as exc:
            self._handle_connect_failure(session_id, exc)
            return
        except Exception as exc:
            logger.exception("Remote session connect raised unexpectedly")
            self._handle_connect_failure(session_id, RemoteConnectionError(str(exc)))
            return

        with self._lock:
            if not self._is_current(session_id, SessionState.STARTING):
                logger.info("Session %d was stopped while connecting", session_id)
                remote.disconnect()
                return
            self._remote_unsubscribe = stream.subscribe(remote.send_audio_frame)
            self._transcript = ""
            self._last_response = ""
            self._transition(SessionState.LISTENING, STATUS_LISTENING)
            threading.Thread(
                target=self._pump_remote_events,
                args=(session_id, remote),
                daemon=True,
            ).start()

    def stop(self) -> None:
        with self._lock:
            if self._state not in (SessionState.STARTING, SessionState.LISTENING):
                return
            self._transition(SessionState.STOPPING, STATUS_STOPPING)
            self._teardown()
            self._transition(SessionState.IDLE, STATUS_READY)

    # ------------------------------------------------------------------
    # Pipeline callbacks
    # ------------------------------------------------------------------

    def _begin_local(self, session_id: int, stream: FrameStream) -> None:
        try:
            self._local_handle = self._local_engine.begin(
                stream, partial(self._handle_transcript, session_id)
            )
        except RecognitionError as exc:
            self._local_handle = None
            logger.warning("Local transcription unavailable: %s", exc)

    def _handle_transcript(self, session_id: int, update: TranscriptUpdate) -> None:
        with self._lock:
            if not self._is_current(session_id, SessionState.LISTENING):
                return
            self._transcript = update.text
            self._publish()

    def _handle_connect_failure(self, session_id: int, exc: VoiceSessionError) -> None:
        with self._lock:
            if not self._is_current(session_id, SessionState.STARTING):
                return
            logger.warning("Remote session failed to connect: %s", exc)
            self._fail(exc)

    def _pump_remote_events(self, session_id: int, remote: RemoteConversationSession) -> None:
        try:
            for event in remote.events():
                with self._lock:
                    if not self._is_current(session_id, SessionState.LISTENING):
                        return
                    if event.kind == RemoteEventKind.DISCONNECTED:
                        self._fail(UnexpectedDisconnect(event.reason or "remote session closed"))
                        return
                    self._last_response = event.text
                    self._publish()
        except Exception as exc:
            logger.exception("Remote event stream failed")
            reason = str(exc) or exc.__class__.__name__
        else:
            reason = "remote event stream ended"

        with self._lock:
            if self._is_current(session_id, SessionState.LISTENING):
                self._fail(UnexpectedDisconnect(reason))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _is_current(self, session_id: int, state: SessionState) -> bool:
        return session_id == self._session_id and self._state == state

    def _fail(self, exc: VoiceSessionError) -> None:
        self._teardown()
        self._transition(SessionState.ERROR, exc.user_message)
        self._emit_error(exc)

    def _teardown(self) -> None:
        """Release in reverse acquisition order: remote, local, capture."""
        unsubscribe, self._remote_unsubscribe = self._remote_unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
        remote, self._remote = self._remote, None
        if remote is not None:
            self._release("disconnect remote session", remote.disconnect)
        self._cancel_local()
        self._release("release microphone", self._capture.stop)
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()

    def _cancel_local(self) -> None:
        handle, self._local_handle = self._local_handle, None
        if handle is not None:
            self._release("cancel local transcription", partial(self._local_engine.cancel, handle))

    def _release(self, what: str, step: Callable[[], None]) -> None:
        try:
            step()
        except Exception:
            logger.exception("Failed to %s", what)

    def _emit_error(self, exc: VoiceSessionError) -> None:
        if self._on_error:
            self._on_error(exc.code, str(exc))

    def _transition(self, to_state: SessionState, status: str) -> None:
        from_state = self._state
        self._state = to_state
        self._status = status
        if from_state != to_state:
            logger.info("Session %d: %s -> %s", self._session_id, from_state.value, to_state.value)
            if self._on_state_change:
                self._on_state_change(from_state, to_state)
        self._publish()

    def _publish(self) -> None:
        snapshot = SessionSnapshot(
            state=self._state,
            status=self._status,
            transcript=self._transcript,
            last_response=self._last_response,
        )
        for listener in list(self._listeners):
            listener(snapshot)
