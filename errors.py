"""Shared error codes, categories and user-facing messages."""

from __future__ import annotations

from enum import Enum

PERMISSION_DENIED = "PERMISSION_DENIED"
PLATFORM_UNSUPPORTED = "PLATFORM_UNSUPPORTED"
NO_SPEECH_TIMEOUT = "NO_SPEECH_TIMEOUT"
AUDIO_CAPTURE_ERROR = "AUDIO_CAPTURE_ERROR"
NETWORK_ERROR = "NETWORK_ERROR"
LOW_CONFIDENCE_TRANSCRIPT = "LOW_CONFIDENCE_TRANSCRIPT"
DUPLICATE_PHRASE = "DUPLICATE_PHRASE"
ALREADY_INITIALIZING = "ALREADY_INITIALIZING"
RECONNECTION_EXHAUSTED = "RECONNECTION_EXHAUSTED"
ACTION_FAILED = "ACTION_FAILED"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone access required for voice commands.",
    PLATFORM_UNSUPPORTED: "Voice recognition not supported on this device.",
    NO_SPEECH_TIMEOUT: "No speech detected, listening again.",
    AUDIO_CAPTURE_ERROR: "Audio capture error, reconnecting.",
    NETWORK_ERROR: "Network connection required for voice recognition.",
    LOW_CONFIDENCE_TRANSCRIPT: "Command not understood, please repeat.",
    DUPLICATE_PHRASE: "Command phrase is already registered.",
    ALREADY_INITIALIZING: "Voice recognition initialization already in progress.",
    RECONNECTION_EXHAUSTED: "Voice recognition could not reconnect.",
    ACTION_FAILED: "Command failed to run.",
}


class ErrorCategory(str, Enum):
    RECOVERABLE = "recoverable"
    FATAL = "fatal"
    INFORMATIONAL = "informational"


_CATEGORIES = {
    PERMISSION_DENIED: ErrorCategory.FATAL,
    PLATFORM_UNSUPPORTED: ErrorCategory.FATAL,
    RECONNECTION_EXHAUSTED: ErrorCategory.FATAL,
    NO_SPEECH_TIMEOUT: ErrorCategory.RECOVERABLE,
    AUDIO_CAPTURE_ERROR: ErrorCategory.RECOVERABLE,
    NETWORK_ERROR: ErrorCategory.RECOVERABLE,
}

# Native error strings of the browser speech API and the device plugins.
_PLATFORM_CODES = {
    "not-allowed": PERMISSION_DENIED,
    "service-not-allowed": PERMISSION_DENIED,
    "permission-denied": PERMISSION_DENIED,
    "language-not-supported": PLATFORM_UNSUPPORTED,
    "not-supported": PLATFORM_UNSUPPORTED,
    "no-speech": NO_SPEECH_TIMEOUT,
    "speech-timeout": NO_SPEECH_TIMEOUT,
    "audio-capture": AUDIO_CAPTURE_ERROR,
    "aborted": AUDIO_CAPTURE_ERROR,
    "network": NETWORK_ERROR,
}

_PERSISTENT = {PERMISSION_DENIED, PLATFORM_UNSUPPORTED, RECONNECTION_EXHAUSTED}


def normalize_platform_code(raw: str) -> str:
    """Map a native platform error string onto an engine error code."""
    value = (raw or "").strip()
    if value in ERROR_MESSAGES:
        return value
    return _PLATFORM_CODES.get(value.lower(), AUDIO_CAPTURE_ERROR)


def classify_error(code: str) -> ErrorCategory:
    return _CATEGORIES.get(code, ErrorCategory.INFORMATIONAL)


def is_persistent(code: str) -> bool:
    return code in _PERSISTENT


class EngineError(Exception):
    code = ""

    def __init__(self, message: str = "", code: str = "") -> None:
        if code:
            self.code = code
        super().__init__(message or ERROR_MESSAGES.get(self.code, self.code))


class CaptureError(EngineError):
    """The capture source failed while acquiring or starting."""

    code = AUDIO_CAPTURE_ERROR


class DuplicatePhraseError(EngineError):
    code = DUPLICATE_PHRASE


class AlreadyInitializingError(EngineError):
    code = ALREADY_INITIALIZING


class ReconnectionExhaustedError(EngineError):
    code = RECONNECTION_EXHAUSTED


class ActionFailedError(EngineError):
    code = ACTION_FAILED

    def __init__(self, command: str, cause: BaseException) -> None:
        self.command = command
        self.cause = cause
        super().__init__(f"command '{command}' failed: {cause}")
