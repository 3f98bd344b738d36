"""Protocol interfaces used by SessionCoordinator."""

from __future__ import annotations

from typing import Callable, Iterable, Iterator, Optional, Protocol

from models import AudioFrame, RemoteEvent, TranscriptUpdate

FrameCallback = Callable[[AudioFrame], None]
TranscriptCallback = Callable[[TranscriptUpdate], None]


class FrameSource(Protocol):
    def subscribe(self, callback: FrameCallback) -> Callable[[], None]: ...


class AudioCaptureSource(Protocol):
    def start(self, stream: Optional[object] = None) -> FrameSource: ...

    def stop(self) -> None: ...


class SpeechRecognitionService(Protocol):
    def recognize(self, frames: Iterable[AudioFrame]) -> Iterator[TranscriptUpdate]: ...

    def cancel(self) -> None: ...


class TranscriptionHandle(Protocol):
    def cancel(self) -> None: ...


class LocalTranscriptionEngine(Protocol):
    def begin(
        self,
        stream: FrameSource,
        on_transcript: TranscriptCallback,
    ) -> TranscriptionHandle: ...

    def cancel(self, handle: TranscriptionHandle) -> None: ...


class RemoteConversationSession(Protocol):
    def connect(self, credential: str) -> None: ...

    def send_audio_frame(self, frame: AudioFrame) -> None: ...

    def events(self) -> Iterator[RemoteEvent]: ...

    def disconnect(self) -> None: ...


class RemoteConversationService(Protocol):
    def create_session(self) -> RemoteConversationSession: ...


class ConfigStore(Protocol):
    def get_api_key(self) -> str: ...

    def set_api_key(self, key: str) -> None: ...

    def get_hotkey(self) -> str: ...

    def set_hotkey(self, hotkey: str) -> None: ...
