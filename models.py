"""Core data models for the voice session."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SessionState(str, Enum):
    IDLE = "IDLE"
    STARTING = "STARTING"
    LISTENING = "LISTENING"
    STOPPING = "STOPPING"
    ERROR = "ERROR"


class RemoteEventKind(str, Enum):
    PARTIAL_RESPONSE = "partial_response"
    FINAL_RESPONSE = "final_response"
    DISCONNECTED = "disconnected"


@dataclass
class AudioFrame:
    pcm16_bytes: bytes
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0


@dataclass(frozen=True)
class TranscriptUpdate:
    text: str
    is_final: bool = False


@dataclass(frozen=True)
class RemoteEvent:
    kind: RemoteEventKind
    text: str = ""
    reason: str = ""


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of the coordinator's published fields."""

    state: SessionState
    status: str
    transcript: str
    last_response: str
