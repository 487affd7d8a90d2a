"""Supervisor orchestrating recognition, matching and command dispatch."""

from __future__ import annotations

import asyncio
import inspect
import threading
import time
from collections import deque
from typing import Any, Awaitable, Callable, Iterable, Optional

from loguru import logger

from command_registry import CommandRegistry, TranscriptMatcher
from config import EngineConfig
from errors import (
    ERROR_MESSAGES,
    LOW_CONFIDENCE_TRANSCRIPT,
    RECONNECTION_EXHAUSTED,
    ActionFailedError,
    AlreadyInitializingError,
    CaptureError,
    DuplicatePhraseError,
    EngineError,
    ErrorCategory,
    classify_error,
    is_persistent,
)
from interfaces import AudioSampleSource, Scheduler, SpeechCaptureSource, StatusSink, TimerHandle
from models import (
    CommandDescriptor,
    LogEntry,
    MisrecognizedEntry,
    PerformanceMetrics,
    SessionState,
    SetupResult,
    StatusSeverity,
    TranscriptEvent,
    VolumeReading,
    now_ms,
)
from recognition_session import PartialCallback, RecognitionSession, StateCallback
from timers import ThreadingScheduler, backoff_delay

_LOG_LEVELS = {
    StatusSeverity.INFO: "INFO",
    StatusSeverity.SUCCESS: "SUCCESS",
    StatusSeverity.WARNING: "WARNING",
    StatusSeverity.DANGER: "ERROR",
    StatusSeverity.BLOCKING: "ERROR",
}


class RecognitionSupervisor:
    def __init__(
        self,
        capture: SpeechCaptureSource,
        commands: Iterable[CommandDescriptor] = (),
        config: Optional[EngineConfig] = None,
        audio_source: Optional[AudioSampleSource] = None,
        status_sink: Optional[StatusSink] = None,
        scheduler: Optional[Scheduler] = None,
        on_state_change: Optional[StateCallback] = None,
        on_partial: Optional[PartialCallback] = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._config.validate()
        self._status_sink = status_sink
        self._scheduler = scheduler or ThreadingScheduler()
        self._on_state_change = on_state_change

        self._lock = threading.RLock()
        self._registry = CommandRegistry()
        for descriptor in commands:
            self._registry.register(descriptor)
        self._matcher = TranscriptMatcher(
            self._registry,
            fuzzy_threshold=self._config.fuzzy_threshold,
            min_confidence=self._config.min_confidence,
        )
        self._session = RecognitionSession(
            capture,
            config=self._config,
            audio_source=audio_source,
            lock=self._lock,
            on_transcript=self._handle_transcript,
            on_partial=on_partial,
            on_error=self._handle_error,
            on_state_change=self._handle_state_change,
            on_whisper=self._handle_whisper,
        )

        self._metrics = PerformanceMetrics()
        self._misrecognized: deque[MisrecognizedEntry] = deque(maxlen=self._config.misrecognized_capacity)
        self._logs: deque[LogEntry] = deque(maxlen=self._config.log_capacity)
        self._command_queue: deque[Callable[[], Any]] = deque()
        self._pending_transcripts: deque[TranscriptEvent] = deque()
        self._pending_registry_ops: deque[Callable[[], Any]] = deque()
        self._reserved_phrases: set[str] = set()
        self._processing = False
        self._retry_count = 0
        self._retry_timer: Optional[TimerHandle] = None
        self._init_started: Optional[float] = None
        self._ready_since: Optional[float] = None
        self.last_error = ""
        self.last_retry_delay_s = 0.0

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def session(self) -> RecognitionSession:
        return self._session

    def is_ready(self) -> bool:
        return self._session.state is SessionState.LISTENING

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def setup(self) -> SetupResult:
        with self._lock:
            if self._session.state is SessionState.LISTENING:
                self._report("Voice recognition already initialized", StatusSeverity.SUCCESS)
                return SetupResult(ready=True)
            if self._session.state is not SessionState.INITIALIZING:
                self._cancel_retry()
                self._retry_count = 0
                self._init_started = time.monotonic()
            self._report("Initializing voice recognition system", StatusSeverity.INFO)
        try:
            ready = self._session.setup()
        except AlreadyInitializingError as exc:
            self._report(str(exc), StatusSeverity.INFO)
            return SetupResult(ready=False, error=exc.code, message=str(exc))
        except CaptureError as exc:
            self._handle_error(exc.code, str(exc))
            return SetupResult(ready=False, error=exc.code, message=str(exc))
        return SetupResult(ready=ready)

    def start(self) -> bool:
        with self._lock:
            state = self._session.state
            if state in (SessionState.UNINITIALIZED, SessionState.FATAL_ERROR):
                return self.setup().ready
            self._cancel_retry()
        try:
            return self._session.start()
        except AlreadyInitializingError:
            return False
        except CaptureError as exc:
            self._handle_error(exc.code, str(exc))
            return False

    def stop(self, explicit: bool = True) -> None:
        with self._lock:
            if explicit:
                self._cancel_retry()
            self._session.stop(explicit=explicit)
            if explicit:
                self._report("Listening stopped", StatusSeverity.INFO)

    def shutdown(self) -> None:
        with self._lock:
            self._cancel_retry()
        self._session.shutdown()
        with self._lock:
            self._command_queue.clear()
            self._pending_transcripts.clear()
            self._pending_registry_ops.clear()
            self._reserved_phrases.clear()
            self._misrecognized.clear()
            self._logs.clear()
            self._metrics = PerformanceMetrics()
            self._retry_count = 0
            self._init_started = None
            self._ready_since = None
            self.last_error = ""
            logger.info("Voice recognition system shut down")

    def set_language(self, language: str) -> None:
        self._session.configure(language=language)
        self._report(f"Language set to {self._config.language}", StatusSeverity.INFO)

    def set_continuous(self, enabled: bool) -> None:
        self._session.configure(continuous=enabled)
        self._report(f"Continuous listening {'enabled' if enabled else 'disabled'}", StatusSeverity.INFO)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def trigger_command(self, canonical_phrase: str) -> bool:
        """Invoke a command without speech.

        Before the session is listening the invocation is queued and runs
        once listening starts.  Returns False for unknown commands and for
        actions that fail immediately.
        """
        with self._lock:
            descriptor = self._registry.get(canonical_phrase)
            if descriptor is None:
                self._report(f"Unknown command: {canonical_phrase}", StatusSeverity.WARNING)
                return False
            phrase = descriptor.canonical_phrase
            if self._session.state is not SessionState.LISTENING:
                self._command_queue.append(lambda: self._dispatch(descriptor, phrase, 1.0))
                self._report(f"Command queued until voice recognition is ready: {phrase}", StatusSeverity.INFO)
                return True
            return self._dispatch(descriptor, phrase, 1.0)

    def register_command(self, descriptor: CommandDescriptor) -> None:
        """Add a command; raises DuplicatePhraseError for a taken phrase.

        During dispatch the registration is applied after the current
        processing cycle, but its phrases are reserved immediately.
        """
        with self._lock:
            self._registry.ensure_available(descriptor)
            if not self._processing:
                self._registry.register(descriptor)
                return
            for phrase in descriptor.phrases:
                if phrase in self._reserved_phrases:
                    raise DuplicatePhraseError(f"phrase '{phrase}' is already pending registration")
            self._reserved_phrases.update(descriptor.phrases)
            self._pending_registry_ops.append(lambda: self._registry.register(descriptor))

    def unregister_command(self, canonical_phrase: str) -> None:
        with self._lock:
            self._run_between_cycles(lambda: self._registry.unregister(canonical_phrase))

    def describe_commands(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "command": d.canonical_phrase,
                    "priority": d.priority,
                    "is_critical": d.is_critical,
                    "alternatives": sorted(d.alternate_phrases),
                }
                for d in self._registry
            ]

    def help_text(self) -> str:
        critical = [d["command"] for d in self.describe_commands() if d["is_critical"]][:2]
        if not critical:
            return 'Say "vigilia help" for available commands.'
        quoted = '", "'.join(critical)
        return f'Critical: "{quoted}". Say "vigilia help" for all commands.'

    # ------------------------------------------------------------------
    # Read-only snapshots
    # ------------------------------------------------------------------

    def get_metrics(self) -> PerformanceMetrics:
        with self._lock:
            return self._metrics.snapshot(self._ready_since)

    def get_misrecognized_log(self) -> list[MisrecognizedEntry]:
        with self._lock:
            return list(self._misrecognized)

    def get_logs(self) -> list[LogEntry]:
        with self._lock:
            return list(self._logs)

    # ------------------------------------------------------------------
    # Session callbacks
    # ------------------------------------------------------------------

    def _handle_state_change(self, from_state: SessionState, to_state: SessionState) -> None:
        if to_state is SessionState.LISTENING:
            self._retry_count = 0
            self._cancel_retry()
            if self._init_started is not None:
                self._metrics.init_time_ms = (time.monotonic() - self._init_started) * 1000.0
                self._init_started = None
            if self._ready_since is None:
                self._ready_since = time.monotonic()
            self._report(f"Voice commands activated! {self.help_text()}", StatusSeverity.SUCCESS)
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
        if to_state is SessionState.LISTENING:
            self._flush_queue()

    def _handle_transcript(self, event: TranscriptEvent) -> None:
        with self._lock:
            if self._processing:
                self._pending_transcripts.append(event)
                return
            self._processing = True
            try:
                self._process_transcript(event)
                while self._pending_transcripts:
                    self._process_transcript(self._pending_transcripts.popleft())
            finally:
                self._processing = False
                self._apply_pending_registry_ops()

    def _handle_whisper(self, reading: VolumeReading) -> None:
        with self._lock:
            self._metrics.whisper_detections += 1
            self._report(f"Whisper detected (rms={reading.rms:.3f})", StatusSeverity.INFO)

    def _handle_error(self, code: str, message: str) -> None:
        """Single funnel for every platform and setup error."""
        with self._lock:
            self._metrics.error_count += 1
            self.last_error = code
            category = classify_error(code)
            if category is ErrorCategory.RECOVERABLE:
                self._schedule_reconnect(code)
            elif category is ErrorCategory.FATAL:
                self._cancel_retry()
                severity = StatusSeverity.BLOCKING if is_persistent(code) else StatusSeverity.DANGER
                self._report(message or ERROR_MESSAGES[code], severity)
            else:
                self._report(message or ERROR_MESSAGES.get(code, code), StatusSeverity.INFO)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _process_transcript(self, event: TranscriptEvent) -> None:
        started = time.perf_counter()
        result = self._matcher.match(event.text, event.confidence)
        if result.accepted and result.descriptor is not None:
            self._metrics.record_confidence(event.confidence)
            self._dispatch(result.descriptor, event.text, event.confidence)
        else:
            self._misrecognized.append(
                MisrecognizedEntry(
                    text=event.text,
                    confidence=event.confidence,
                    timestamp_ms=event.timestamp_ms or now_ms(),
                    reason=result.reason,
                )
            )
            logger.info(f"{LOW_CONFIDENCE_TRANSCRIPT}: '{event.text}' ({event.confidence:.2f}) {result.reason}")
            self._report(f"No command matched: {event.text}", StatusSeverity.WARNING)
        self._metrics.total_processing_time_ms += (time.perf_counter() - started) * 1000.0

    def _dispatch(self, descriptor: CommandDescriptor, transcript: str, confidence: float) -> bool:
        name = descriptor.canonical_phrase
        self._metrics.commands_processed += 1
        if descriptor.is_critical:
            self._metrics.critical_commands_processed += 1
        try:
            outcome = descriptor.action(transcript, confidence)
            if inspect.isawaitable(outcome):
                return self._await_action(descriptor, outcome)
        except Exception as exc:
            self._record_action_failure(ActionFailedError(name, exc))
            return False
        self._metrics.successful_commands += 1
        self._report(f"Command executed: {name}", StatusSeverity.SUCCESS)
        return True

    def _await_action(self, descriptor: CommandDescriptor, outcome: Awaitable[Any]) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(_wait_for(outcome))
            self._metrics.successful_commands += 1
            self._report(f"Command executed: {descriptor.canonical_phrase}", StatusSeverity.SUCCESS)
            return True

        task = loop.create_task(_wait_for(outcome))
        task.add_done_callback(lambda t: self._finish_async_action(descriptor, t))
        return True

    def _finish_async_action(self, descriptor: CommandDescriptor, task: "asyncio.Task[Any]") -> None:
        with self._lock:
            if task.cancelled():
                self._report(f"Command cancelled: {descriptor.canonical_phrase}", StatusSeverity.WARNING)
                return
            exc = task.exception()
            if exc is not None:
                self._record_action_failure(ActionFailedError(descriptor.canonical_phrase, exc))
                return
            self._metrics.successful_commands += 1
            self._report(f"Command executed: {descriptor.canonical_phrase}", StatusSeverity.SUCCESS)

    def _record_action_failure(self, error: ActionFailedError) -> None:
        self._metrics.error_count += 1
        logger.opt(exception=error.cause).error(f"{error.code}: {error}")
        self._report(f"Command failed: {error.command}", StatusSeverity.DANGER)

    def _flush_queue(self) -> None:
        while self._command_queue and self._session.state is SessionState.LISTENING:
            queued = self._command_queue.popleft()
            queued()

    def _run_between_cycles(self, operation: Callable[[], Any]) -> None:
        if self._processing:
            self._pending_registry_ops.append(operation)
        else:
            operation()

    def _apply_pending_registry_ops(self) -> None:
        while self._pending_registry_ops:
            operation = self._pending_registry_ops.popleft()
            try:
                operation()
            except EngineError as exc:
                self._report(f"Command registry change failed: {exc}", StatusSeverity.WARNING)
        self._reserved_phrases.clear()

    def _schedule_reconnect(self, code: str) -> None:
        self._cancel_retry()
        self._retry_count += 1
        self._metrics.reconnect_attempts += 1
        if self._retry_count > self._config.max_retries:
            self._session.mark_exhausted()
            self.last_error = RECONNECTION_EXHAUSTED
            self._metrics.error_count += 1
            self._report(ERROR_MESSAGES[RECONNECTION_EXHAUSTED], StatusSeverity.BLOCKING)
            return
        delay = backoff_delay(self._config.base_delay_s, self._retry_count)
        self.last_retry_delay_s = delay
        self._report(
            f"{ERROR_MESSAGES.get(code, code)} Reconnecting in {delay:.1f}s "
            f"(attempt {self._retry_count}/{self._config.max_retries})",
            StatusSeverity.WARNING,
        )
        self._retry_timer = self._scheduler.call_later(delay, self._attempt_reconnect)

    def _attempt_reconnect(self) -> None:
        with self._lock:
            self._retry_timer = None
            if self._session.state is not SessionState.RECONNECTING:
                return
        try:
            self._session.reconnect()
        except CaptureError as exc:
            self._handle_error(exc.code, str(exc))

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _report(self, message: str, severity: StatusSeverity) -> None:
        self._logs.append(LogEntry(message=message, severity=severity, timestamp_ms=now_ms()))
        logger.log(_LOG_LEVELS[severity], message)
        if self._status_sink is None:
            return
        try:
            self._status_sink.on_status(message, severity)
        except Exception as exc:
            logger.warning(f"Status sink failed: {exc}")


async def _wait_for(outcome: Awaitable[Any]) -> Any:
    return await outcome
