"""Cloud speech capture source using DashScope qwen3-asr-flash.

The qwen3-asr-flash model accepts complete audio (file path, URL, or base64)
and streams back recognition results via ``stream=True``.  Each capture
cycle records one utterance window from the microphone, converts it to a
WAV payload and feeds it to the model.  Streamed partials become interim
results, the last text becomes the final result, and the cycle ends with an
``end`` event so the session can restart it in continuous mode.
"""

from __future__ import annotations

import base64
import io
import os
import threading
import time
import wave
from queue import Empty, Queue
from typing import Callable, Optional

from loguru import logger

from errors import AUDIO_CAPTURE_ERROR, PLATFORM_UNSUPPORTED, CaptureError
from models import AudioFrame, CaptureEvent, CaptureEventKind
from recorder import SoundDeviceRecorder, has_input_device

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore


def _pcm_to_wav_base64(
    pcm: bytes,
    sample_rate: int = 16000,
    channels: int = 1,
    sample_width: int = 2,
) -> str:
    """Convert raw PCM bytes to a base64-encoded WAV string."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return base64.b64encode(buf.getvalue()).decode("ascii")


class DashscopeCaptureSource:
    def __init__(
        self,
        api_key: str = "",
        model: str = "qwen3-asr-flash",
        request_timeout_s: float = 10.0,
        utterance_s: float = 4.0,
        assumed_confidence: float = 0.9,
        recorder: Optional[SoundDeviceRecorder] = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._request_timeout_s = request_timeout_s
        self._utterance_s = utterance_s
        self._assumed_confidence = assumed_confidence
        self._recorder = recorder or SoundDeviceRecorder()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._on_event: Optional[Callable[[CaptureEvent], None]] = None
        self._language = "en-US"
        self._interim_results = True

    def bind(self, on_event: Callable[[CaptureEvent], None]) -> None:
        self._on_event = on_event

    def request_permission(self) -> bool:
        if dashscope is None:
            raise CaptureError("dashscope is not installed", code=PLATFORM_UNSUPPORTED)
        return has_input_device()

    def start(self, language: str, continuous: bool, interim_results: bool) -> None:
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            raise CaptureError("previous capture cycle is still running", code=AUDIO_CAPTURE_ERROR)
        self._language = language
        self._interim_results = interim_results
        self._stop_event.clear()
        audio_queue: Queue[AudioFrame | None] = Queue(maxsize=int(self._utterance_s * 20) + 10)
        self._recorder.start(audio_queue)
        self._thread = threading.Thread(target=self._worker, args=(audio_queue,), daemon=True)
        self._emit(CaptureEvent(kind=CaptureEventKind.START.value))
        self._thread.start()

    def stop(self) -> None:
        # Not joined: the worker may be waiting on the caller's lock to deliver its end event.
        self._stop_event.set()
        self._recorder.stop()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _worker(self, audio_queue: Queue[AudioFrame | None]) -> None:
        """Collect one utterance window, recognise it, then end the cycle."""
        pcm = bytearray()
        sample_rate = 16000
        channels = 1
        deadline = time.monotonic() + self._utterance_s

        while not self._stop_event.is_set() and time.monotonic() < deadline:
            try:
                frame = audio_queue.get(timeout=0.2)
            except Empty:
                continue
            if frame is None:  # Sentinel
                break
            pcm.extend(frame.pcm16_bytes)
            sample_rate = frame.sample_rate
            channels = frame.channels

        self._recorder.stop()
        if pcm and not self._stop_event.is_set():
            self._recognize_stream(_pcm_to_wav_base64(bytes(pcm), sample_rate, channels))
        self._emit(CaptureEvent(kind=CaptureEventKind.END.value))

    def _recognize_stream(self, wav_base64: str) -> None:
        """Send audio to dashscope and stream partial/final results."""
        if dashscope is None:
            self._emit_error("language-not-supported", "dashscope is not installed")
            return

        api_key = self._api_key or os.getenv("DASHSCOPE_API_KEY", "")
        if not api_key:
            self._emit_error("service-not-allowed", "No API key configured")
            return

        try:
            response = dashscope.MultiModalConversation.call(
                api_key=api_key,
                model=self._model,
                messages=[
                    {"role": "system", "content": [{"text": ""}]},
                    {"role": "user", "content": [{"audio": wav_base64}]},
                ],
                result_format="message",
                asr_options={"enable_itn": False, "language": self._language.split("-")[0]},
                stream=True,
                timeout=self._request_timeout_s,
            )
        except Exception as exc:
            self._emit(self._to_error_event(exc))
            return

        latest_text = ""
        try:
            for chunk in response:
                if self._stop_event.is_set():
                    return
                text = self._extract_text(chunk)
                if text:
                    latest_text = text
                    if self._interim_results:
                        self._emit(CaptureEvent(kind=CaptureEventKind.RESULT.value, text=text, is_final=False))
        except Exception as exc:
            self._emit(self._to_error_event(exc))
            return

        if latest_text:
            logger.debug(f"DashScope transcript: {latest_text!r}")
            self._emit(
                CaptureEvent(
                    kind=CaptureEventKind.RESULT.value,
                    text=latest_text,
                    confidence=self._assumed_confidence,
                    is_final=True,
                )
            )

    def _extract_text(self, chunk: object) -> str:
        """Pull text from a dashscope streaming chunk dict."""
        if isinstance(chunk, dict):
            output = chunk.get("output", {})
            choices = output.get("choices", [])
            if not choices:
                return ""
            message = choices[0].get("message", {})
            content = message.get("content", [])
            if not content:
                return ""
            value = content[0]
            if isinstance(value, dict):
                return str(value.get("text", ""))
        return ""

    def _to_error_event(self, exc: Exception) -> CaptureEvent:
        """Map an SDK/network exception to a platform error event."""
        message = str(exc)
        low = message.lower()
        if "401" in low or "auth" in low or "api key" in low:
            code = "service-not-allowed"
        elif "timeout" in low or "network" in low or "connection" in low:
            code = "network"
        else:
            code = "aborted"
        return CaptureEvent(kind=CaptureEventKind.ERROR.value, code=code, message=message)

    def _emit_error(self, code: str, message: str) -> None:
        self._emit(CaptureEvent(kind=CaptureEventKind.ERROR.value, code=code, message=message))

    def _emit(self, event: CaptureEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)
