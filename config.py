"""Simple JSON-based config store.

The API key is read from ``DASHSCOPE_API_KEY`` first and from the user's
config file second.  It is never part of the source tree.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

API_KEY_ENV = "DASHSCOPE_API_KEY"

DEFAULTS = {
    "hotkey": "Key.alt_l",
    "vosk_model_path": str(Path.home() / ".cache" / "vosk" / "vosk-model-small-en-us-0.15"),
    "realtime_model": "qwen-omni-turbo-realtime-latest",
    "voice": "Chelsie",
}


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "voice_session" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_api_key(self) -> str:
        from_env = os.getenv(API_KEY_ENV, "")
        if from_env:
            return from_env
        data = self._read_all()
        return str(data.get("api_key", ""))

    def set_api_key(self, key: str) -> None:
        data = self._read_all()
        data["api_key"] = key
        self._write_all(data)

    def get_hotkey(self) -> str:
        return self._get("hotkey")

    def set_hotkey(self, hotkey: str) -> None:
        self._set("hotkey", hotkey)

    def get_vosk_model_path(self) -> str:
        return self._get("vosk_model_path")

    def set_vosk_model_path(self, path: str) -> None:
        self._set("vosk_model_path", path)

    def get_realtime_model(self) -> str:
        return self._get("realtime_model")

    def get_voice(self) -> str:
        return self._get("voice")

    def _get(self, key: str) -> str:
        data = self._read_all()
        return str(data.get(key, DEFAULTS[key]))

    def _set(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        # holds the API key
        os.chmod(self._path, 0o600)
