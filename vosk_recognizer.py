"""On-device speech capture source using a Vosk Kaldi model."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Callable, Optional

from loguru import logger

from errors import AUDIO_CAPTURE_ERROR, PLATFORM_UNSUPPORTED, CaptureError
from models import AudioFrame, CaptureEvent, CaptureEventKind
from recorder import SoundDeviceRecorder, has_input_device

try:
    import vosk
except Exception:  # pragma: no cover
    vosk = None  # type: ignore


def _mean_word_confidence(result: dict) -> Optional[float]:
    words = result.get("result") or []
    scores = [float(w["conf"]) for w in words if isinstance(w, dict) and "conf" in w]
    if not scores:
        return None
    return sum(scores) / len(scores)


class VoskCaptureSource:
    def __init__(
        self,
        model_path: str | Path,
        sample_rate: int = 16000,
        recorder: Optional[SoundDeviceRecorder] = None,
    ) -> None:
        self._model_path = Path(model_path)
        self._sample_rate = sample_rate
        self._recorder = recorder or SoundDeviceRecorder(sample_rate=sample_rate)
        self._model: Any = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._on_event: Optional[Callable[[CaptureEvent], None]] = None

    def bind(self, on_event: Callable[[CaptureEvent], None]) -> None:
        self._on_event = on_event

    def request_permission(self) -> bool:
        if vosk is None:
            raise CaptureError("vosk is not installed", code=PLATFORM_UNSUPPORTED)
        if self._model is None:
            if not self._model_path.exists():
                raise CaptureError(f"Vosk model not found at {self._model_path}", code=PLATFORM_UNSUPPORTED)
            self._model = vosk.Model(str(self._model_path))
            logger.info(f"Loaded Vosk model from {self._model_path}")
        return has_input_device()

    def start(self, language: str, continuous: bool, interim_results: bool) -> None:
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            raise CaptureError("previous capture cycle is still running", code=AUDIO_CAPTURE_ERROR)
        if self._model is None:
            raise CaptureError("Vosk model is not loaded", code=PLATFORM_UNSUPPORTED)
        recognizer = vosk.KaldiRecognizer(self._model, self._sample_rate)
        recognizer.SetWords(True)
        self._stop_event.clear()
        audio_queue: Queue[AudioFrame | None] = Queue(maxsize=100)
        self._recorder.start(audio_queue)
        self._thread = threading.Thread(
            target=self._worker,
            args=(recognizer, audio_queue, continuous, interim_results),
            daemon=True,
        )
        self._emit(CaptureEvent(kind=CaptureEventKind.START.value))
        self._thread.start()

    def stop(self) -> None:
        # Not joined: the worker may be waiting on the caller's lock to deliver its end event.
        self._stop_event.set()
        self._recorder.stop()

    def _worker(self, recognizer: Any, audio_queue: Queue[AudioFrame | None], continuous: bool, interim: bool) -> None:
        last_partial = ""
        finished = False
        while not self._stop_event.is_set():
            try:
                frame = audio_queue.get(timeout=0.2)
            except Empty:
                continue
            if frame is None:
                break
            try:
                accepted = recognizer.AcceptWaveform(frame.pcm16_bytes)
            except Exception as exc:
                self._emit(CaptureEvent(kind=CaptureEventKind.ERROR.value, code="aborted", message=str(exc)))
                finished = True
                break
            if accepted:
                last_partial = ""
                if self._emit_final(json.loads(recognizer.Result())) and not continuous:
                    finished = True
                    break
            elif interim:
                partial = json.loads(recognizer.PartialResult()).get("partial", "")
                if partial and partial != last_partial:
                    last_partial = partial
                    self._emit(CaptureEvent(kind=CaptureEventKind.RESULT.value, text=partial, is_final=False))

        self._recorder.stop()
        if not finished and not self._stop_event.is_set():
            self._emit_final(json.loads(recognizer.FinalResult()))
        self._emit(CaptureEvent(kind=CaptureEventKind.END.value))

    def _emit_final(self, result: dict) -> bool:
        text = str(result.get("text", "")).strip()
        if not text:
            return False
        self._emit(
            CaptureEvent(
                kind=CaptureEventKind.RESULT.value,
                text=text,
                confidence=_mean_word_confidence(result),
                is_final=True,
            )
        )
        return True

    def _emit(self, event: CaptureEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)
