"""Microphone capture source with frame fan-out."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, ClassVar, Optional

from errors import CaptureError
from models import AudioFrame

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

FrameCallback = Callable[[AudioFrame], None]


class FrameStream:
    """Hands each captured frame to every attached subscriber.

    Nothing is buffered here: a frame published while no subscriber is
    attached is dropped. Consumers that need a hand-off slot keep their own.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[FrameCallback] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, callback: FrameCallback) -> Callable[[], None]:
        with self._lock:
            if not self._closed:
                self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, frame: AudioFrame) -> None:
        with self._lock:
            if self._closed:
                return
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(frame)
            except Exception:
                # keep the capture thread alive for the other consumers
                logger.exception("Frame subscriber %r failed", callback)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._subscribers.clear()


class SoundDeviceCapture:
    _tap_guard: ClassVar[threading.Lock] = threading.Lock()
    _active_tap: ClassVar[Optional["SoundDeviceCapture"]] = None

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_ms: int = 100,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self._frames: Optional[FrameStream] = None
        self.frames_captured = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self, stream: Optional[FrameStream] = None) -> FrameStream:
        with self._lock:
            if sd is None:
                raise CaptureError("sounddevice is not installed")
            with SoundDeviceCapture._tap_guard:
                if SoundDeviceCapture._active_tap is not None:
                    raise CaptureError("microphone is already tapped")
                SoundDeviceCapture._active_tap = self

            frames = stream if stream is not None else FrameStream()
            blocksize = int(self.sample_rate * (self.chunk_ms / 1000.0))
            try:
                self._stream = sd.InputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="int16",
                    blocksize=blocksize,
                    callback=self._on_audio,
                )
                self._frames = frames
                self._running = True
                self._stream.start()
            except Exception as exc:
                self._running = False
                self._frames = None
                self._stream = None
                self._release_tap()
                raise CaptureError(f"cannot open input device: {exc}") from exc

            logger.info(
                "Microphone tap started (%d Hz, %d ch, %d ms blocks)",
                self.sample_rate,
                self.channels,
                self.chunk_ms,
            )
            return frames

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            stream, self._stream = self._stream, None
            frames, self._frames = self._frames, None
            try:
                if stream is not None:
                    stream.stop()
                    stream.close()
            finally:
                if frames is not None:
                    frames.close()
                self._release_tap()
            logger.info("Microphone tap released after %d frames", self.frames_captured)

    def _release_tap(self) -> None:
        with SoundDeviceCapture._tap_guard:
            if SoundDeviceCapture._active_tap is self:
                SoundDeviceCapture._active_tap = None

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        target = self._frames
        if not self._running or target is None:
            return
        if np is None:
            return
        if status:
            logger.debug("Input stream status: %s", status)
        payload = np.asarray(indata, dtype=np.int16).tobytes()
        self.frames_captured += 1
        target.publish(
            AudioFrame(
                pcm16_bytes=payload,
                sample_rate=self.sample_rate,
                channels=self.channels,
                timestamp_ms=int(time.time() * 1000),
            )
        )
