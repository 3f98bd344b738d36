"""Application entrypoint."""

from __future__ import annotations

import logging
import os
import sys
import threading

from capture import SoundDeviceCapture
from config import API_KEY_ENV, JsonConfigStore
from hotkey import GlobalHotkeyAdapter
from models import SessionSnapshot
from realtime import DashscopeRealtimeService
from recognizer import LocalTranscriptionEngine, VoskSpeechRecognizer
from session_coordinator import SessionCoordinator

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("voice_session")


def setup_logging(level: str | None = None, format: str = DEFAULT_FORMAT) -> None:
    """Configure the root logger once. Level defaults to LOG_LEVEL or INFO."""
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=format,
        stream=sys.stdout,
    )


class App:
    def __init__(self, config_store: JsonConfigStore | None = None) -> None:
        self.config_store = config_store or JsonConfigStore()
        self._quit = threading.Event()
        self._last_printed: SessionSnapshot | None = None

        api_key = self.config_store.get_api_key()
        if not api_key:
            logger.warning("No API key found; set %s or add api_key to the config file", API_KEY_ENV)

        model_path = self.config_store.get_vosk_model_path()
        self.coordinator = SessionCoordinator(
            capture=SoundDeviceCapture(),
            local_engine=LocalTranscriptionEngine(
                recognizer_factory=lambda: VoskSpeechRecognizer(model_path),
            ),
            remote_service=DashscopeRealtimeService(
                model=self.config_store.get_realtime_model(),
                voice=self.config_store.get_voice(),
            ),
            credential=api_key,
            on_error=self._on_error,
        )
        self.coordinator.subscribe(self._on_snapshot)
        self.hotkey = GlobalHotkeyAdapter(hotkey_name=self.config_store.get_hotkey())

    # ------------------------------------------------------------------
    # Callbacks (called from worker threads)
    # ------------------------------------------------------------------

    def _on_snapshot(self, snapshot: SessionSnapshot) -> None:
        previous = self._last_printed
        self._last_printed = snapshot
        if previous is None or previous.status != snapshot.status:
            logger.info("[%s] %s", snapshot.state.value, snapshot.status)
        if snapshot.transcript and (previous is None or previous.transcript != snapshot.transcript):
            logger.info("You said: %s", snapshot.transcript)
        if snapshot.last_response and (previous is None or previous.last_response != snapshot.last_response):
            logger.info("Assistant: %s", snapshot.last_response)

    def _on_error(self, code: str, message: str) -> None:
        logger.error("%s: %s", code, message)

    # ------------------------------------------------------------------
    # Hotkey handlers
    # ------------------------------------------------------------------

    def _on_hotkey(self) -> None:
        # start() blocks while the remote session connects
        threading.Thread(target=self.coordinator.toggle, daemon=True).start()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        try:
            self.hotkey.start(on_trigger=self._on_hotkey)
        except RuntimeError as exc:
            logger.error("Hotkey disabled: %s", exc)
            return 1
        logger.info("Press %s to talk, Ctrl+C to quit", self.config_store.get_hotkey())
        try:
            while not self._quit.wait(timeout=0.5):
                pass
        except KeyboardInterrupt:
            pass
        self.quit()
        return 0

    def quit(self) -> None:
        self._quit.set()
        self.hotkey.stop()
        self.coordinator.stop()


def main() -> int:
    setup_logging()
    app = App()
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
