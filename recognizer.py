"""On-device transcription using Vosk.

``VoskSpeechRecognizer`` turns a lazy sequence of PCM frames into evolving
utterance hypotheses.  ``LocalTranscriptionEngine`` runs one recognizer per
session on a worker thread, fed from the capture ``FrameStream`` through a
single-slot queue.  Recognition failures end that handle's updates and are
logged; they never reach the session state machine.
"""

from __future__ import annotations

import json
import logging
import threading
from queue import Empty, Full, Queue
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from errors import RecognitionError
from interfaces import FrameSource, SpeechRecognitionService, TranscriptCallback
from models import AudioFrame, TranscriptUpdate

try:
    from vosk import KaldiRecognizer, Model, SetLogLevel
except Exception:  # pragma: no cover
    KaldiRecognizer = None  # type: ignore
    Model = None  # type: ignore
    SetLogLevel = None  # type: ignore

logger = logging.getLogger(__name__)

_models: Dict[str, Any] = {}
_models_lock = threading.Lock()


def load_model(model_path: str) -> Any:
    """Lazy load a Vosk model, cached per path."""
    with _models_lock:
        model = _models.get(model_path)
        if model is None:
            if Model is None:
                raise RecognitionError("vosk is not installed")
            if SetLogLevel is not None:
                SetLogLevel(-1)
            logger.info("Loading Vosk model from %s...", model_path)
            try:
                model = Model(model_path)
            except Exception as exc:
                raise RecognitionError(f"cannot load model {model_path}: {exc}") from exc
            _models[model_path] = model
        return model


class VoskSpeechRecognizer:
    def __init__(
        self,
        model_path: str,
        model_loader: Callable[[str], Any] = load_model,
    ) -> None:
        self._model_path = model_path
        self._model_loader = model_loader
        self._cancel_event = threading.Event()

    def recognize(self, frames: Iterable[AudioFrame]) -> Iterator[TranscriptUpdate]:
        if KaldiRecognizer is None:
            raise RecognitionError("vosk is not installed")

        recognizer: Any = None
        committed: list[str] = []
        last_text = ""
        try:
            for frame in frames:
                if self._cancel_event.is_set():
                    return
                if recognizer is None:
                    recognizer = KaldiRecognizer(
                        self._model_loader(self._model_path), frame.sample_rate
                    )
                if recognizer.AcceptWaveform(frame.pcm16_bytes):
                    segment = json.loads(recognizer.Result()).get("text", "").strip()
                    if segment:
                        committed.append(segment)
                    text = " ".join(committed)
                else:
                    partial = json.loads(recognizer.PartialResult()).get("partial", "").strip()
                    text = " ".join(committed + [partial]) if partial else " ".join(committed)
                if text and text != last_text:
                    last_text = text
                    yield TranscriptUpdate(text=text, is_final=False)

            if self._cancel_event.is_set() or recognizer is None:
                return
            tail = json.loads(recognizer.FinalResult()).get("text", "").strip()
            if tail:
                committed.append(tail)
            yield TranscriptUpdate(text=" ".join(committed), is_final=True)
        except RecognitionError:
            raise
        except Exception as exc:
            raise RecognitionError(f"vosk recognition failed: {exc}") from exc

    def cancel(self) -> None:
        self._cancel_event.set()


class TranscriptionHandle:
    def __init__(
        self,
        recognizer: SpeechRecognitionService,
        on_transcript: TranscriptCallback,
        on_error: Optional[Callable[[RecognitionError], None]] = None,
        queue_maxsize: int = 1,
    ) -> None:
        self._recognizer = recognizer
        self._on_transcript = on_transcript
        self._on_error = on_error
        self._queue: Queue[AudioFrame | None] = Queue(maxsize=queue_maxsize)
        self._cancel_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.dropped_frames = 0

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def attach(self, stream: FrameSource) -> None:
        self._unsubscribe = stream.subscribe(self._offer)
        self._thread = threading.Thread(target=self._worker, daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        """Stop delivering updates. Does not wait for the worker thread.

        The caller may hold a lock the worker's callback needs, so the worker
        is left to notice the cancel flag on its own; use ``join`` to wait.
        """
        if self._cancel_event.is_set():
            return
        self._cancel_event.set()
        self._detach()
        self._recognizer.cancel()
        self._put_sentinel()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker to exit. Returns True once it has."""
        thread = self._thread
        if thread is None:
            return True
        if thread is not threading.current_thread():
            thread.join(timeout=timeout)
        return not thread.is_alive()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _offer(self, frame: AudioFrame) -> None:
        if self._cancel_event.is_set():
            return
        try:
            self._queue.put_nowait(frame)
        except Full:
            self.dropped_frames += 1

    def _frames(self) -> Iterator[AudioFrame]:
        while not self._cancel_event.is_set():
            try:
                frame = self._queue.get(timeout=0.2)
            except Empty:
                continue
            if frame is None:  # Sentinel
                return
            yield frame

    def _worker(self) -> None:
        try:
            for update in self._recognizer.recognize(self._frames()):
                if self._cancel_event.is_set():
                    return
                self._on_transcript(update)
        except RecognitionError as exc:
            logger.warning("Local transcription stopped: %s", exc)
            if self._on_error:
                self._on_error(exc)
        finally:
            self._detach()

    def _detach(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()

    def _put_sentinel(self) -> None:
        try:
            self._queue.put_nowait(None)
        except Full:
            pass  # worker sees the cancel flag on its next poll


class LocalTranscriptionEngine:
    def __init__(
        self,
        recognizer_factory: Callable[[], SpeechRecognitionService],
        queue_maxsize: int = 1,
        on_error: Optional[Callable[[RecognitionError], None]] = None,
    ) -> None:
        self._recognizer_factory = recognizer_factory
        self._queue_maxsize = queue_maxsize
        self._on_error = on_error

    def begin(self, stream: FrameSource, on_transcript: TranscriptCallback) -> TranscriptionHandle:
        handle = TranscriptionHandle(
            recognizer=self._recognizer_factory(),
            on_transcript=on_transcript,
            on_error=self._on_error,
            queue_maxsize=self._queue_maxsize,
        )
        handle.attach(stream)
        return handle

    def cancel(self, handle: TranscriptionHandle) -> None:
        handle.cancel()
