"""Core data models for the voice command engine."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional

CommandAction = Callable[[str, float], Any]


class SessionState(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    INITIALIZING = "INITIALIZING"
    LISTENING = "LISTENING"
    STOPPED = "STOPPED"
    RECONNECTING = "RECONNECTING"
    FATAL_ERROR = "FATAL_ERROR"


class VolumeClass(str, Enum):
    SILENCE = "silence"
    WHISPER = "whisper"
    NORMAL = "normal"


class CaptureEventKind(str, Enum):
    START = "start"
    RESULT = "result"
    ERROR = "error"
    END = "end"


class StatusSeverity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    DANGER = "danger"
    BLOCKING = "blocking"


_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w\s]")


def normalize_phrase(text: str) -> str:
    """Lower-case, strip punctuation and collapse whitespace."""
    return _WHITESPACE.sub(" ", _PUNCTUATION.sub("", text or "").strip().lower())


@dataclass
class AudioFrame:
    pcm16_bytes: bytes
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0


@dataclass
class CaptureEvent:
    kind: str
    text: str = ""
    confidence: Optional[float] = None
    is_final: bool = True
    code: str = ""
    message: str = ""


@dataclass
class TranscriptEvent:
    text: str
    confidence: float
    timestamp_ms: int = 0


@dataclass
class VolumeReading:
    rms: float
    timestamp_ms: int = 0


@dataclass
class LogEntry:
    message: str
    severity: StatusSeverity
    timestamp_ms: int


@dataclass
class MisrecognizedEntry:
    text: str
    confidence: float
    timestamp_ms: int
    reason: str = ""


@dataclass(frozen=True)
class CommandDescriptor:
    canonical_phrase: str
    action: CommandAction
    alternate_phrases: frozenset[str] = frozenset()
    priority: int = 3
    is_critical: bool = False

    def __post_init__(self) -> None:
        canonical = normalize_phrase(self.canonical_phrase)
        if not canonical:
            raise ValueError("canonical phrase must not be empty")
        alternates = frozenset(
            p for p in (normalize_phrase(a) for a in self.alternate_phrases) if p and p != canonical
        )
        object.__setattr__(self, "canonical_phrase", canonical)
        object.__setattr__(self, "alternate_phrases", alternates)

    @property
    def phrases(self) -> tuple[str, ...]:
        return (self.canonical_phrase, *sorted(self.alternate_phrases))


@dataclass
class MatchResult:
    descriptor: Optional[CommandDescriptor]
    phrase: str = ""
    score: float = 1.0
    accepted: bool = False
    reason: str = ""


@dataclass
class SetupResult:
    ready: bool
    error: str = ""
    message: str = ""


@dataclass
class PerformanceMetrics:
    commands_processed: int = 0
    successful_commands: int = 0
    critical_commands_processed: int = 0
    error_count: int = 0
    whisper_detections: int = 0
    average_confidence: float = 0.0
    init_time_ms: float = 0.0
    total_processing_time_ms: float = 0.0
    reconnect_attempts: int = 0
    uptime_s: float = 0.0
    confidence_samples: int = field(default=0, repr=False)

    def record_confidence(self, confidence: float) -> None:
        """Fold one accepted match into the running mean."""
        self.confidence_samples += 1
        self.average_confidence += (confidence - self.average_confidence) / self.confidence_samples

    def snapshot(self, ready_since: Optional[float] = None) -> "PerformanceMetrics":
        uptime = time.monotonic() - ready_since if ready_since is not None else 0.0
        return replace(self, uptime_s=uptime)


def now_ms() -> int:
    return int(time.time() * 1000)
