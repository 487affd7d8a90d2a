"""Tests for DashscopeCaptureSource."""

from __future__ import annotations

import base64
import threading
import time
from queue import Queue
from unittest.mock import MagicMock, patch

import pytest

from errors import AUDIO_CAPTURE_ERROR, PLATFORM_UNSUPPORTED, CaptureError
from models import AudioFrame, CaptureEvent, CaptureEventKind, CommandDescriptor, SessionState
from recognizer import DashscopeCaptureSource, _pcm_to_wav_base64
from supervisor import RecognitionSupervisor


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

def _make_frame(n_samples: int = 1600) -> AudioFrame:
    """Generate a silent AudioFrame (all zeros)."""
    return AudioFrame(
        pcm16_bytes=b"\x00\x00" * n_samples,
        sample_rate=16000,
        channels=1,
        timestamp_ms=0,
    )


class FakeRecorder:
    """Feeds prepared frames followed by the sentinel."""

    def __init__(self, frames: int = 1) -> None:
        self.frames = frames
        self.start_calls = 0
        self.stop_calls = 0

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None:
        self.start_calls += 1
        for _ in range(self.frames):
            audio_queue.put(_make_frame())
        audio_queue.put(None)

    def stop(self) -> None:
        self.stop_calls += 1


def _run(source: DashscopeCaptureSource, *, timeout: float = 3.0) -> list[CaptureEvent]:
    events: list[CaptureEvent] = []
    source.bind(events.append)
    source.start("en-US", True, True)
    deadline = time.time() + timeout
    while time.time() < deadline:
        if any(e.kind == CaptureEventKind.END.value for e in events):
            break
        time.sleep(0.05)
    source.stop()
    return events


def _kinds(events: list[CaptureEvent]) -> list[str]:
    return [e.kind for e in events]


# ---------------------------------------------------------------
# _pcm_to_wav_base64
# ---------------------------------------------------------------

def test_pcm_to_wav_base64_produces_valid_base64() -> None:
    pcm = b"\x00\x00" * 1600
    result = _pcm_to_wav_base64(pcm, sample_rate=16000, channels=1)
    decoded = base64.b64decode(result)
    assert decoded[:4] == b"RIFF"


# ---------------------------------------------------------------
# Permission
# ---------------------------------------------------------------

@patch("recognizer.dashscope", None)
def test_permission_without_dashscope_is_unsupported() -> None:
    with pytest.raises(CaptureError) as info:
        DashscopeCaptureSource(api_key="k", recorder=FakeRecorder()).request_permission()
    assert info.value.code == PLATFORM_UNSUPPORTED


@patch("recognizer.has_input_device", return_value=True)
@patch("recognizer.dashscope", MagicMock())
def test_permission_granted_with_input_device(_mock_device: MagicMock) -> None:
    assert DashscopeCaptureSource(api_key="k", recorder=FakeRecorder()).request_permission() is True


# ---------------------------------------------------------------
# Capture cycle
# ---------------------------------------------------------------

def _fake_streaming_response():
    yield {"output": {"choices": [{"message": {"content": [{"text": "vigilia"}]}}]}}
    yield {"output": {"choices": [{"message": {"content": [{"text": "vigilia sos"}]}}]}}


@patch("recognizer.dashscope")
def test_cycle_emits_start_partials_final_and_end(mock_ds: MagicMock) -> None:
    mock_ds.MultiModalConversation.call.return_value = _fake_streaming_response()
    recorder = FakeRecorder()

    events = _run(DashscopeCaptureSource(api_key="test-key", assumed_confidence=0.85, recorder=recorder))

    assert _kinds(events) == ["start", "result", "result", "result", "end"]
    partials = [e for e in events if e.kind == "result" and not e.is_final]
    finals = [e for e in events if e.kind == "result" and e.is_final]
    assert [e.text for e in partials] == ["vigilia", "vigilia sos"]
    assert finals[0].text == "vigilia sos"
    assert finals[0].confidence == 0.85
    assert mock_ds.MultiModalConversation.call.call_args.kwargs["asr_options"]["language"] == "en"
    assert recorder.start_calls == 1


@patch("recognizer.dashscope")
def test_interim_results_can_be_disabled(mock_ds: MagicMock) -> None:
    mock_ds.MultiModalConversation.call.return_value = _fake_streaming_response()
    source = DashscopeCaptureSource(api_key="test-key", recorder=FakeRecorder())
    events: list[CaptureEvent] = []
    source.bind(events.append)

    source.start("en-US", True, False)
    deadline = time.time() + 3.0
    while time.time() < deadline and not any(e.kind == "end" for e in events):
        time.sleep(0.05)
    source.stop()

    assert _kinds(events) == ["start", "result", "end"]


@patch("recognizer.dashscope")
def test_silence_ends_cycle_without_request(mock_ds: MagicMock) -> None:
    events = _run(DashscopeCaptureSource(api_key="test-key", recorder=FakeRecorder(frames=0)))

    assert _kinds(events) == ["start", "end"]
    mock_ds.MultiModalConversation.call.assert_not_called()


@patch("recognizer.dashscope", MagicMock())
@patch.dict("os.environ", {"DASHSCOPE_API_KEY": ""}, clear=False)
def test_missing_api_key_is_service_not_allowed() -> None:
    events = _run(DashscopeCaptureSource(api_key="", recorder=FakeRecorder()))

    errors = [e for e in events if e.kind == "error"]
    assert [e.code for e in errors] == ["service-not-allowed"]
    assert events[-1].kind == "end"


@pytest.mark.parametrize(
    "exc, code",
    [
        (ConnectionError("network timeout"), "network"),
        (Exception("401 Unauthorized: invalid api key"), "service-not-allowed"),
        (RuntimeError("model overloaded"), "aborted"),
    ],
)
def test_sdk_errors_map_to_platform_codes(exc: Exception, code: str) -> None:
    with patch("recognizer.dashscope") as mock_ds:
        mock_ds.MultiModalConversation.call.side_effect = exc
        events = _run(DashscopeCaptureSource(api_key="test-key", recorder=FakeRecorder()))

    errors = [e for e in events if e.kind == "error"]
    assert [e.code for e in errors] == [code]


@patch("recognizer.dashscope")
def test_stop_during_streaming_drops_final(mock_ds: MagicMock) -> None:
    def slow_response():
        yield {"output": {"choices": [{"message": {"content": [{"text": "hello"}]}}]}}
        time.sleep(1.0)
        yield {"output": {"choices": [{"message": {"content": [{"text": "world"}]}}]}}

    mock_ds.MultiModalConversation.call.return_value = slow_response()
    source = DashscopeCaptureSource(api_key="test-key", recorder=FakeRecorder())
    events: list[CaptureEvent] = []
    source.bind(events.append)

    source.start("en-US", True, True)
    time.sleep(0.3)
    source.stop()
    time.sleep(1.2)

    assert not [e for e in events if e.kind == "result" and e.is_final]


# ---------------------------------------------------------------
# Restart while the previous cycle is still running
# ---------------------------------------------------------------

class OneShotRecorder:
    """Feeds one utterance on the first start and nothing afterwards."""

    def __init__(self) -> None:
        self.start_calls = 0

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None:
        self.start_calls += 1
        if self.start_calls == 1:
            audio_queue.put(_make_frame())
            audio_queue.put(None)

    def stop(self) -> None:
        pass


class _Timer:
    def __init__(self, callback) -> None:  # noqa: ANN001
        self.callback = callback

    def cancel(self) -> None:
        pass


class ManualScheduler:
    def __init__(self) -> None:
        self.timers: list[_Timer] = []

    def call_later(self, delay_s: float, callback) -> _Timer:  # noqa: ANN001
        timer = _Timer(callback)
        self.timers.append(timer)
        return timer


@patch("recognizer.dashscope", MagicMock())
def test_start_refuses_while_previous_worker_runs() -> None:
    recorder = OneShotRecorder()
    recorder.start_calls = 1
    source = DashscopeCaptureSource(api_key="test-key", utterance_s=5.0, recorder=recorder)
    source.bind(lambda event: None)
    source.start("en-US", True, True)

    with pytest.raises(CaptureError) as info:
        source.start("en-US", True, True)

    assert info.value.code == AUDIO_CAPTURE_ERROR
    source.stop()


@patch("recognizer.has_input_device", return_value=True)
@patch("recognizer.dashscope")
def test_stop_then_start_during_request_recovers(mock_ds: MagicMock, _mock_device: MagicMock) -> None:
    entered = threading.Event()
    release = threading.Event()

    def slow_call(**kwargs):  # noqa: ANN003
        entered.set()
        release.wait(timeout=5.0)
        return []

    mock_ds.MultiModalConversation.call.side_effect = slow_call
    source = DashscopeCaptureSource(api_key="test-key", utterance_s=5.0, recorder=OneShotRecorder())
    scheduler = ManualScheduler()
    supervisor = RecognitionSupervisor(
        capture=source,
        commands=[CommandDescriptor("vigilia sos", lambda t, c: None, is_critical=True)],
        scheduler=scheduler,
    )

    assert supervisor.setup().ready is True
    assert entered.wait(timeout=3.0)
    first_worker = source._thread

    supervisor.stop()
    assert supervisor.start() is False
    assert supervisor.state is SessionState.RECONNECTING
    assert len(scheduler.timers) == 1

    release.set()
    first_worker.join(timeout=3.0)
    assert not first_worker.is_alive()
    assert supervisor.state is SessionState.RECONNECTING

    scheduler.timers[0].callback()

    assert supervisor.state is SessionState.LISTENING
    supervisor.shutdown()
