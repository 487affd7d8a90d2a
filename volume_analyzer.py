"""Volume analysis and adaptive whisper sensitivity.

Buffers read from an :class:`AudioSampleSource` are reduced to an RMS
reading and classified against two thresholds.  Whisper-level readings
lower the normal-speech threshold so quiet speech keeps being picked up;
normal readings relax it back towards the configured ceiling.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional, Sequence

import numpy as np
from loguru import logger

from models import VolumeClass, VolumeReading, now_ms

WHISPER_DECAY = 0.8
NORMAL_RECOVERY = 1.1


def classify(reading: VolumeReading, sensitivity: float, whisper_sensitivity: float) -> VolumeClass:
    if reading.rms < whisper_sensitivity:
        return VolumeClass.SILENCE
    if reading.rms < sensitivity:
        return VolumeClass.WHISPER
    return VolumeClass.NORMAL


class VolumeAnalyzer:
    def __init__(
        self,
        sensitivity: float = 0.08,
        whisper_sensitivity: float = 0.03,
        interval_s: float = 0.1,
        on_whisper: Optional[Callable[[VolumeReading], None]] = None,
    ) -> None:
        self.default_sensitivity = sensitivity
        self.whisper_sensitivity = whisper_sensitivity
        self.sensitivity = sensitivity
        self.interval_s = interval_s
        self._on_whisper = on_whisper

        self._reader: Optional[Callable[[], Sequence[float]]] = None
        self._thread: Optional[threading.Thread] = None
        self._active = threading.Event()
        self._closed = threading.Event()

    def sample(self, buffer: Sequence[float]) -> VolumeReading:
        samples = np.asarray(buffer, dtype=np.float64)
        if samples.size == 0:
            return VolumeReading(rms=0.0, timestamp_ms=now_ms())
        rms = float(np.sqrt(np.mean(np.square(samples))))
        return VolumeReading(rms=rms, timestamp_ms=now_ms())

    def process(self, buffer: Sequence[float]) -> VolumeClass:
        """Sample, classify and adapt sensitivity for one buffer."""
        reading = self.sample(buffer)
        volume = classify(reading, self.sensitivity, self.whisper_sensitivity)
        if volume is VolumeClass.WHISPER:
            self.sensitivity = max(self.whisper_sensitivity, self.sensitivity * WHISPER_DECAY)
            logger.debug(f"Whisper detected (rms={reading.rms:.4f}), sensitivity -> {self.sensitivity:.4f}")
            if self._on_whisper:
                self._on_whisper(reading)
        elif volume is VolumeClass.NORMAL:
            self.sensitivity = min(self.default_sensitivity, self.sensitivity * NORMAL_RECOVERY)
        return volume

    def reset(self) -> None:
        self.sensitivity = self.default_sensitivity

    # ------------------------------------------------------------------
    # Sampling loop
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._active.is_set()

    def start(self, reader: Callable[[], Sequence[float]]) -> None:
        """Begin (or resume) periodic sampling from ``reader``."""
        self._reader = reader
        self._closed.clear()
        self._active.set()
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._worker, name="volume-analyzer", daemon=True)
        self._thread.start()

    def pause(self) -> None:
        self._active.clear()

    def close(self) -> None:
        self._active.clear()
        self._closed.set()
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=0.5)
        self._thread = None
        self._reader = None

    def _worker(self) -> None:
        while not self._closed.is_set():
            if not self._active.wait(timeout=self.interval_s):
                continue
            reader = self._reader
            if reader is None:
                continue
            try:
                self.process(reader())
            except Exception as exc:
                logger.warning(f"Volume sampling failed, pausing whisper detection: {exc}")
                self._active.clear()
                continue
            self._closed.wait(self.interval_s)
