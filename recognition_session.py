"""State machine around one platform speech-recognition engagement.

The session is the only component that talks to the capture source.  It
acquires the microphone sample stream and the recognizer together, turns
native capture events into transcripts, and releases both on every exit
path.  Retry timing is not decided here: recoverable failures move the
session to ``RECONNECTING`` and are reported through ``on_error`` so the
supervisor can schedule :meth:`reconnect`.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional, Sequence

from loguru import logger

from config import EngineConfig, normalize_language
from errors import (
    AUDIO_CAPTURE_ERROR,
    ERROR_MESSAGES,
    PERMISSION_DENIED,
    RECONNECTION_EXHAUSTED,
    AlreadyInitializingError,
    CaptureError,
    EngineError,
    ErrorCategory,
    classify_error,
    normalize_platform_code,
)
from interfaces import AudioSampleSource, SpeechCaptureSource
from models import CaptureEvent, CaptureEventKind, SessionState, TranscriptEvent, VolumeReading, now_ms
from volume_analyzer import VolumeAnalyzer

StateCallback = Callable[[SessionState, SessionState], None]
TranscriptCallback = Callable[[TranscriptEvent], None]
PartialCallback = Callable[[str], None]
ErrorCallback = Callable[[str, str], None]
WhisperCallback = Callable[[VolumeReading], None]


class RecognitionSession:
    def __init__(
        self,
        capture: SpeechCaptureSource,
        config: Optional[EngineConfig] = None,
        audio_source: Optional[AudioSampleSource] = None,
        lock: Optional[threading.RLock] = None,
        on_transcript: Optional[TranscriptCallback] = None,
        on_partial: Optional[PartialCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_state_change: Optional[StateCallback] = None,
        on_whisper: Optional[WhisperCallback] = None,
    ) -> None:
        self._capture = capture
        self._config = config or EngineConfig()
        self._audio_source = audio_source
        self._on_transcript = on_transcript
        self._on_partial = on_partial
        self._on_error = on_error
        self._on_state_change = on_state_change
        self._on_whisper = on_whisper

        self._lock = lock or threading.RLock()
        self._state = SessionState.UNINITIALIZED
        self._generation = 0
        self._permission_granted = False
        self._capture_started = False
        self._awaiting_start = False
        self._stream_handle: Any = None
        self._stream_open = False

        self.analyzer = VolumeAnalyzer(
            sensitivity=self._config.sensitivity,
            whisper_sensitivity=self._config.whisper_sensitivity,
            interval_s=self._config.sample_interval_s,
            on_whisper=self._handle_whisper,
        )
        self._capture.bind(self._handle_capture_event)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def sensitivity(self) -> float:
        return self.analyzer.sensitivity

    @property
    def whisper_detection_enabled(self) -> bool:
        return self._audio_source is not None

    def configure(self, language: Optional[str] = None, continuous: Optional[bool] = None) -> None:
        """Change capture options; they apply on the next capture start."""
        with self._lock:
            if language is not None:
                self._config.language = normalize_language(language)
            if continuous is not None:
                self._config.continuous = continuous

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def setup(self) -> bool:
        """Request permission and start capturing.

        Returns True once the session is listening, False while the capture
        source has not acknowledged the start yet.  Raises
        :class:`CaptureError` when setup fails and
        :class:`AlreadyInitializingError` for concurrent calls.
        """
        with self._lock:
            if self._state is SessionState.LISTENING:
                logger.debug("Session already listening, setup is a no-op")
                return True
            if self._state is SessionState.INITIALIZING:
                raise AlreadyInitializingError()
            self._release()
            self._permission_granted = False
            self._transition(SessionState.INITIALIZING)
            generation = self._next_generation()
        return self._initialize(generation)

    def start(self) -> bool:
        with self._lock:
            state = self._state
            if state is SessionState.LISTENING:
                return True
            if state is SessionState.INITIALIZING:
                raise AlreadyInitializingError()
            if state is SessionState.RECONNECTING:
                return self.reconnect()
            if state is SessionState.STOPPED and self._permission_granted:
                self._next_generation()
                self._awaiting_start = True
                self._acquire()
                return self._state is SessionState.LISTENING
        return self.setup()

    def stop(self, explicit: bool = True) -> None:
        with self._lock:
            state = self._state
            if state in (SessionState.UNINITIALIZED, SessionState.STOPPED, SessionState.FATAL_ERROR):
                return
            if not explicit and state is SessionState.LISTENING:
                # Let the recognizer end; the end event restarts it in continuous mode.
                self._stop_capture()
                return
            self._next_generation()
            self._release()
            self._transition(SessionState.STOPPED)

    def reconnect(self) -> bool:
        """Retry acquisition from ``RECONNECTING``."""
        with self._lock:
            if self._state is not SessionState.RECONNECTING:
                return self._state is SessionState.LISTENING
            generation = self._next_generation()
            if self._permission_granted:
                self._acquire()
                return self._state is SessionState.LISTENING
        return self._initialize(generation)

    def mark_exhausted(self) -> None:
        with self._lock:
            self._next_generation()
            self._release()
            self._transition(SessionState.FATAL_ERROR)
            logger.error(ERROR_MESSAGES[RECONNECTION_EXHAUSTED])

    def shutdown(self) -> None:
        """Release everything regardless of state and reset to UNINITIALIZED."""
        with self._lock:
            self._next_generation()
            self._release()
            self._permission_granted = False
            self._transition(SessionState.UNINITIALIZED)
        # Outside the lock: the sampler thread may be waiting on it in the whisper callback.
        self.analyzer.close()
        self.analyzer.reset()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _initialize(self, generation: int) -> bool:
        code = ""
        message = ""
        granted = False
        try:
            granted = bool(self._capture.request_permission())
        except EngineError as exc:
            code, message = exc.code, str(exc)
        except Exception as exc:
            code, message = AUDIO_CAPTURE_ERROR, f"permission request failed: {exc}"

        with self._lock:
            if generation != self._generation:
                logger.info("Setup cancelled before permission was resolved")
                return False
            if code:
                self._fail(code, message)
            if not granted:
                self._fail(PERMISSION_DENIED, ERROR_MESSAGES[PERMISSION_DENIED])
            self._permission_granted = True
            self._acquire()
            return self._state is SessionState.LISTENING

    def _acquire(self) -> None:
        if self._audio_source is not None and not self._stream_open:
            try:
                self._stream_handle = self._audio_source.open_stream()
                self._stream_open = True
            except Exception as exc:
                logger.warning(f"Audio sample stream unavailable, whisper detection disabled: {exc}")

        config = self._config
        self._capture_started = True
        try:
            self._capture.start(config.language, config.continuous, config.interim_results)
        except EngineError as exc:
            self._fail(exc.code, str(exc))
        except Exception as exc:
            self._fail(AUDIO_CAPTURE_ERROR, f"capture start failed: {exc}")
        logger.debug(f"Capture started ({config.language}, continuous={config.continuous})")

    def _fail(self, code: str, message: str) -> None:
        """Move to the error state for ``code`` and raise it to the caller."""
        self._release()
        if classify_error(code) is ErrorCategory.FATAL:
            self._transition(SessionState.FATAL_ERROR)
        else:
            self._transition(SessionState.RECONNECTING)
        raise CaptureError(message, code=code)

    def _release(self) -> None:
        self._awaiting_start = False
        self.analyzer.pause()
        self._stop_capture()
        if self._stream_open:
            handle = self._stream_handle
            self._stream_open = False
            self._stream_handle = None
            try:
                self._audio_source.close_stream(handle)  # type: ignore[union-attr]
            except Exception as exc:
                logger.warning(f"Failed to close audio stream: {exc}")

    def _stop_capture(self) -> None:
        if not self._capture_started:
            return
        self._capture_started = False
        try:
            self._capture.stop()
        except Exception as exc:
            logger.warning(f"Failed to stop capture source: {exc}")

    def _read_buffer(self) -> Sequence[float]:
        if self._audio_source is None or not self._stream_open:
            return []
        return self._audio_source.read_buffer()

    def _handle_capture_event(self, event: CaptureEvent) -> None:
        with self._lock:
            kind = event.kind
            if kind == CaptureEventKind.START.value:
                self._handle_start()
            elif kind == CaptureEventKind.RESULT.value:
                self._handle_result(event)
            elif kind == CaptureEventKind.ERROR.value:
                self._handle_error(event)
            elif kind == CaptureEventKind.END.value:
                self._handle_end()

    def _handle_start(self) -> None:
        state = self._state
        if state in (SessionState.INITIALIZING, SessionState.RECONNECTING) or (
            state is SessionState.STOPPED and self._awaiting_start
        ):
            self._awaiting_start = False
            self._transition(SessionState.LISTENING)
            if self._stream_open:
                self.analyzer.start(self._read_buffer)

    def _handle_result(self, event: CaptureEvent) -> None:
        if self._state is not SessionState.LISTENING:
            logger.debug(f"Dropping result while {self._state.value}: {event.text!r}")
            return
        text = event.text.strip()
        if not text:
            return
        if not event.is_final:
            if self._on_partial:
                self._on_partial(text)
            return
        confidence = self._config.assumed_confidence if event.confidence is None else event.confidence
        confidence = min(max(float(confidence), 0.0), 1.0)
        if self._on_transcript:
            self._on_transcript(TranscriptEvent(text=text, confidence=confidence, timestamp_ms=now_ms()))

    def _handle_error(self, event: CaptureEvent) -> None:
        state = self._state
        if state in (SessionState.UNINITIALIZED, SessionState.STOPPED, SessionState.FATAL_ERROR):
            logger.debug(f"Ignoring capture error '{event.code}' while {state.value}")
            return
        code = normalize_platform_code(event.code)
        message = event.message or ERROR_MESSAGES.get(code, code)
        category = classify_error(code)
        if category is ErrorCategory.FATAL:
            self._next_generation()
            self._release()
            self._transition(SessionState.FATAL_ERROR)
        elif category is ErrorCategory.RECOVERABLE:
            self._release()
            self._transition(SessionState.RECONNECTING)
        logger.warning(f"Capture error {code}: {message}")
        if self._on_error:
            self._on_error(code, message)

    def _handle_end(self) -> None:
        if self._state is not SessionState.LISTENING:
            return
        if self._config.continuous and self._config.auto_restart:
            logger.debug("Capture ended, restarting")
            try:
                self._acquire()
            except CaptureError as exc:
                if self._on_error:
                    self._on_error(exc.code, str(exc))
            return
        self._release()
        self._transition(SessionState.STOPPED)

    def _handle_whisper(self, reading: VolumeReading) -> None:
        if self._on_whisper:
            self._on_whisper(reading)

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        logger.debug(f"Session {from_state.value} -> {to_state.value}")
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
