"""Tests for DashscopeRealtimeSession."""

from __future__ import annotations

import base64
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from errors import AuthError, RemoteConnectionError
from models import AudioFrame, RemoteEvent, RemoteEventKind
from realtime import DashscopeRealtimeService, classify_error


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

class BadStatus(Exception):
    """Shaped like websocket.WebSocketBadStatusException."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"Handshake status {status_code}")
        self.status_code = status_code


class FakeConversation:
    """Behaves like OmniRealtimeConversation as seen from the session.

    ``ws`` only exists once ``connect()`` has built the socket, so ``close()``
    before that fails the way the SDK's does.  A rejected handshake is reported to
    ``_on_error`` and ``connect()`` then times out.
    """

    instances: list["FakeConversation"] = []
    handshake_error: Exception | None = None
    on_connect = None

    def __init__(self, model, callback, **kwargs) -> None:  # noqa: ANN001
        self.model = model
        self.callback = callback
        self.kwargs = kwargs
        self.connected = False
        self.closed = False
        self.session_options: dict = {}
        self.appended: list[str] = []
        self.ws_error: Exception | None = None
        FakeConversation.instances.append(self)

    def _on_error(self, ws, error) -> None:  # noqa: ANN001
        self.ws_error = error

    def connect(self) -> None:
        if FakeConversation.on_connect is not None:
            FakeConversation.on_connect()
        self.ws = MagicMock()
        if FakeConversation.handshake_error is not None:
            self._on_error(self.ws, FakeConversation.handshake_error)
            raise TimeoutError("websocket connection could not established within 5s")
        self.connected = True
        self.callback.on_open()

    def update_session(self, **kwargs) -> None:
        self.session_options = kwargs

    def append_audio(self, audio_b64: str) -> None:
        self.appended.append(audio_b64)

    def close(self) -> None:
        self.ws.close()
        self.closed = True


@pytest.fixture
def conversation_cls():  # noqa: ANN201
    FakeConversation.instances = []
    FakeConversation.handshake_error = None
    FakeConversation.on_connect = None
    with patch("realtime.RecordingConversation", FakeConversation), \
            patch("realtime.MultiModality", MagicMock()), \
            patch("realtime.AudioFormat", MagicMock()):
        yield FakeConversation


def _collect(session, count: int, timeout: float = 2.0) -> list[RemoteEvent]:  # noqa: ANN001
    events: list[RemoteEvent] = []

    def reader() -> None:
        for event in session.events():
            events.append(event)
            if len(events) >= count:
                return

    thread = threading.Thread(target=reader, daemon=True)
    thread.start()
    thread.join(timeout=timeout)
    return events


def _wait_until(predicate, timeout: float = 2.0) -> bool:  # noqa: ANN001
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# ---------------------------------------------------------------
# Connect
# ---------------------------------------------------------------

def test_connect_configures_session(conversation_cls) -> None:  # noqa: ANN001
    service = DashscopeRealtimeService(model="qwen-omni-turbo-realtime-latest", voice="Chelsie")
    session = service.create_session()

    session.connect("secret")

    conversation = conversation_cls.instances[0]
    assert conversation.connected is True
    assert conversation.kwargs["api_key"] == "secret"
    assert "url" not in conversation.kwargs
    assert conversation.session_options["voice"] == "Chelsie"
    assert conversation.session_options["turn_detection_type"] == "server_vad"
    assert session.connected is True
    session.disconnect()


def test_connect_without_credential_is_auth_error(conversation_cls) -> None:  # noqa: ANN001
    session = DashscopeRealtimeService().create_session()

    with pytest.raises(AuthError):
        session.connect("")
    assert conversation_cls.instances == []


@patch("realtime.RecordingConversation", None)
def test_connect_without_dashscope_is_connection_error() -> None:
    session = DashscopeRealtimeService().create_session()

    with pytest.raises(RemoteConnectionError, match="not installed"):
        session.connect("secret")


@pytest.mark.parametrize("status_code", [401, 403])
def test_rejected_handshake_is_auth_error(conversation_cls, status_code) -> None:  # noqa: ANN001
    conversation_cls.handshake_error = BadStatus(status_code)
    session = DashscopeRealtimeService().create_session()

    with pytest.raises(AuthError, match=str(status_code)) as excinfo:
        session.connect("bad-key")
    assert excinfo.value.retryable is False
    assert conversation_cls.instances[0].closed is True


def test_unreachable_server_is_connection_error(conversation_cls) -> None:  # noqa: ANN001
    conversation_cls.handshake_error = ConnectionRefusedError("[Errno 111] Connection refused")
    session = DashscopeRealtimeService().create_session()

    with pytest.raises(RemoteConnectionError, match="refused") as excinfo:
        session.connect("secret")
    assert excinfo.value.retryable is True
    assert conversation_cls.instances[0].closed is True


def test_classify_error_mapping() -> None:
    assert isinstance(classify_error(Exception("Invalid API key")), AuthError)
    assert isinstance(classify_error(TimeoutError("websocket connection timeout")), RemoteConnectionError)
    err = classify_error(ConnectionError("network unreachable"))
    assert err.retryable is True

    timeout = TimeoutError("websocket connection could not established within 5s")
    assert isinstance(classify_error(timeout, BadStatus(401)), AuthError)
    assert isinstance(classify_error(timeout, BadStatus(403)), AuthError)
    assert isinstance(classify_error(timeout, BadStatus(500)), RemoteConnectionError)
    assert isinstance(classify_error(timeout, None), RemoteConnectionError)


def test_disconnect_during_connect_closes_websocket(conversation_cls) -> None:  # noqa: ANN001
    session = DashscopeRealtimeService().create_session()
    conversation_cls.on_connect = session.disconnect

    with pytest.raises(RemoteConnectionError, match="cancelled"):
        session.connect("secret")

    conversation = conversation_cls.instances[0]
    assert conversation.closed is True
    assert conversation.ws.close.called
    assert session.connected is False
    assert list(session.events()) == []


def test_disconnect_before_connect_cancels(conversation_cls) -> None:  # noqa: ANN001
    session = DashscopeRealtimeService().create_session()

    session.disconnect()
    session.disconnect()  # idempotent

    with pytest.raises(RemoteConnectionError, match="cancelled"):
        session.connect("secret")
    assert list(session.events()) == []


# ---------------------------------------------------------------
# Audio out
# ---------------------------------------------------------------

def test_send_audio_frame_appends_base64(conversation_cls) -> None:  # noqa: ANN001
    session = DashscopeRealtimeService().create_session()
    session.connect("secret")
    conversation = conversation_cls.instances[0]

    session.send_audio_frame(AudioFrame(pcm16_bytes=b"\x01\x02"))

    assert _wait_until(lambda: len(conversation.appended) == 1)
    assert base64.b64decode(conversation.appended[0]) == b"\x01\x02"
    session.disconnect()


def test_send_before_connect_is_dropped_silently(conversation_cls) -> None:  # noqa: ANN001
    session = DashscopeRealtimeService().create_session()

    session.send_audio_frame(AudioFrame(pcm16_bytes=b"\x01\x02"))

    assert session.dropped_frames == 0
    assert conversation_cls.instances == []


# ---------------------------------------------------------------
# Events in
# ---------------------------------------------------------------

def test_server_events_become_partial_and_final_responses(conversation_cls) -> None:  # noqa: ANN001
    session = DashscopeRealtimeService().create_session()
    session.connect("secret")
    callback = conversation_cls.instances[0].callback

    callback.on_event({"type": "session.created"})
    callback.on_event({"type": "response.created"})
    callback.on_event({"type": "response.text.delta", "delta": "Hel"})
    callback.on_event({"type": "response.text.delta", "delta": "lo"})
    callback.on_event({"type": "response.text.done", "text": "Hello!"})

    events = _collect(session, 3)

    assert events == [
        RemoteEvent(kind=RemoteEventKind.PARTIAL_RESPONSE, text="Hel"),
        RemoteEvent(kind=RemoteEventKind.PARTIAL_RESPONSE, text="Hello"),
        RemoteEvent(kind=RemoteEventKind.FINAL_RESPONSE, text="Hello!"),
    ]
    session.disconnect()


def test_audio_transcript_events_are_mapped(conversation_cls) -> None:  # noqa: ANN001
    session = DashscopeRealtimeService().create_session()
    session.connect("secret")
    callback = conversation_cls.instances[0].callback

    callback.on_event({"type": "response.audio_transcript.delta", "delta": "Sure"})
    callback.on_event({"type": "response.audio_transcript.done", "transcript": ""})

    events = _collect(session, 2)
    assert events[1] == RemoteEvent(kind=RemoteEventKind.FINAL_RESPONSE, text="Sure")
    session.disconnect()


def test_server_close_emits_disconnected_then_ends(conversation_cls) -> None:  # noqa: ANN001
    session = DashscopeRealtimeService().create_session()
    session.connect("secret")
    callback = conversation_cls.instances[0].callback

    callback.on_close(1006, "abnormal closure")

    events = list(session.events())
    assert events == [
        RemoteEvent(kind=RemoteEventKind.DISCONNECTED, reason="1006: abnormal closure"),
    ]
    assert session.connected is False


def test_disconnect_ends_events_without_disconnected(conversation_cls) -> None:  # noqa: ANN001
    session = DashscopeRealtimeService().create_session()
    session.connect("secret")
    conversation = conversation_cls.instances[0]

    session.disconnect()
    conversation.callback.on_close(1000, "bye")

    assert list(session.events()) == []
    assert conversation.closed is True


def test_server_error_event_is_logged_only(conversation_cls, caplog) -> None:  # noqa: ANN001
    session = DashscopeRealtimeService().create_session()
    session.connect("secret")
    callback = conversation_cls.instances[0].callback

    callback.on_event({"type": "error", "error": {"message": "rate limited"}})

    assert "rate limited" in caplog.text
    session.disconnect()
    assert list(session.events()) == []
