"""Shared error codes, user-facing messages and the exception taxonomy."""

from __future__ import annotations

CAPTURE_UNAVAILABLE = "CAPTURE_UNAVAILABLE"
RECOGNITION_FAILED = "RECOGNITION_FAILED"
AUTH_FAILED = "AUTH_FAILED"
NETWORK_ERROR = "NETWORK_ERROR"
UNEXPECTED_DISCONNECT = "UNEXPECTED_DISCONNECT"

ERROR_MESSAGES = {
    CAPTURE_UNAVAILABLE: "Microphone is unavailable.",
    RECOGNITION_FAILED: "Local transcription failed.",
    AUTH_FAILED: "API key is invalid.",
    NETWORK_ERROR: "Network failed, please retry.",
    UNEXPECTED_DISCONNECT: "Connection to the assistant was lost.",
}


class VoiceSessionError(Exception):
    code = NETWORK_ERROR
    retryable = False

    def __init__(self, message: str = "", retryable: bool | None = None) -> None:
        super().__init__(message or ERROR_MESSAGES[self.code])
        if retryable is not None:
            self.retryable = retryable

    @property
    def user_message(self) -> str:
        return ERROR_MESSAGES[self.code]


class CaptureError(VoiceSessionError):
    """Microphone busy, missing, or already tapped."""

    code = CAPTURE_UNAVAILABLE


class RecognitionError(VoiceSessionError):
    """Local recognizer failure. Never fatal to a session."""

    code = RECOGNITION_FAILED


class AuthError(VoiceSessionError):
    code = AUTH_FAILED


class RemoteConnectionError(VoiceSessionError):
    code = NETWORK_ERROR
    retryable = True


class UnexpectedDisconnect(VoiceSessionError):
    code = UNEXPECTED_DISCONNECT
    retryable = True
