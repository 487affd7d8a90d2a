"""Protocol interfaces used by the recognition engine."""

from __future__ import annotations

from typing import Any, Callable, Protocol, Sequence

from models import CaptureEvent, StatusSeverity


class SpeechCaptureSource(Protocol):
    def bind(self, on_event: Callable[[CaptureEvent], None]) -> None: ...

    def request_permission(self) -> bool: ...

    def start(self, language: str, continuous: bool, interim_results: bool) -> None: ...

    def stop(self) -> None: ...


class AudioSampleSource(Protocol):
    def open_stream(self) -> Any: ...

    def read_buffer(self) -> Sequence[float]: ...

    def close_stream(self, handle: Any) -> None: ...


class StatusSink(Protocol):
    def on_status(self, message: str, severity: StatusSeverity) -> None: ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle: ...
