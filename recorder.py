"""Microphone adapters built on sounddevice.

``SoundDeviceRecorder`` pushes PCM16 frames to a queue for the capture
sources; ``SoundDeviceAudioSource`` exposes float sample blocks for volume
analysis.
"""

from __future__ import annotations

import threading
import time
from queue import Full, Queue
from typing import Any

import numpy as np
from loguru import logger

from errors import AUDIO_CAPTURE_ERROR, PERMISSION_DENIED, CaptureError
from models import AudioFrame

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore


def has_input_device() -> bool:
    """True when sounddevice can see at least one input device."""
    if sd is None:
        return False
    try:
        sd.query_devices(kind="input")
    except Exception as exc:
        logger.warning(f"No usable input device: {exc}")
        return False
    return True


class SoundDeviceRecorder:
    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_ms: int = 100,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self.dropped_chunks = 0
        self._audio_queue: Queue[AudioFrame | None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None:
                raise CaptureError("sounddevice is not installed", code=AUDIO_CAPTURE_ERROR)
            self._audio_queue = audio_queue
            blocksize = int(self.sample_rate * (self.chunk_ms / 1000.0))
            try:
                self._stream = sd.InputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="int16",
                    blocksize=blocksize,
                    callback=self._on_audio,
                )
                self._stream.start()
            except Exception as exc:
                self._stream = None
                raise CaptureError(f"microphone unavailable: {exc}", code=AUDIO_CAPTURE_ERROR) from exc
            self._running = True

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                self._emit_sentinel_if_needed()
                return
            self._running = False
            if self._stream is not None:
                self._stream.stop()
                self._stream.close()
                self._stream = None
            self._emit_sentinel_if_needed()

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if not self._running or self._audio_queue is None:
            return
        if status:
            logger.debug(f"Input stream status: {status}")
        frame = AudioFrame(
            pcm16_bytes=np.asarray(indata, dtype=np.int16).tobytes(),
            sample_rate=self.sample_rate,
            channels=self.channels,
            timestamp_ms=int(time.time() * 1000),
        )
        try:
            self._audio_queue.put_nowait(frame)
        except Full:
            self.dropped_chunks += 1

    def _emit_sentinel_if_needed(self) -> None:
        if self._audio_queue is None:
            return
        try:
            self._audio_queue.put_nowait(None)
        except Full:
            pass


class SoundDeviceAudioSource:
    """``AudioSampleSource`` keeping the latest float32 block of the mic."""

    def __init__(self, sample_rate: int = 16000, block_ms: int = 100) -> None:
        self.sample_rate = sample_rate
        self.block_ms = block_ms
        self._lock = threading.Lock()
        self._latest: np.ndarray = np.zeros(0, dtype=np.float32)

    def open_stream(self) -> Any:
        if sd is None:
            raise CaptureError("sounddevice is not installed", code=AUDIO_CAPTURE_ERROR)
        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=int(self.sample_rate * self.block_ms / 1000),
                callback=self._on_audio,
            )
            stream.start()
        except Exception as exc:
            raise CaptureError(f"microphone unavailable: {exc}", code=PERMISSION_DENIED) from exc
        return stream

    def read_buffer(self) -> np.ndarray:
        with self._lock:
            return self._latest.copy()

    def close_stream(self, handle: Any) -> None:
        if handle is None:
            return
        handle.stop()
        handle.close()
        with self._lock:
            self._latest = np.zeros(0, dtype=np.float32)

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        block = np.asarray(indata, dtype=np.float32).reshape(-1)
        with self._lock:
            self._latest = block.copy()
