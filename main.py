"""Application entrypoint."""

from __future__ import annotations

import argparse
import sys
import threading

from loguru import logger

from config import JsonConfigStore
from interfaces import SpeechCaptureSource
from models import CommandDescriptor, SessionState, StatusSeverity
from recorder import SoundDeviceAudioSource
from recognizer import DashscopeCaptureSource
from supervisor import RecognitionSupervisor
from vosk_recognizer import VoskCaptureSource

# canonical phrase, alternates, priority, critical
DEFAULT_COMMANDS = [
    ("vigilia sos", ("sos", "emergency", "help me", "mayday"), 1, True),
    ("capture photo", ("take photo", "snap picture"), 3, False),
    ("record audio", ("start recording",), 3, False),
    ("record video", ("start video",), 3, False),
    ("share location", (), 2, False),
    ("safe route", ("find safe path", "navigation"), 2, False),
    ("refresh location", (), 3, False),
    ("threat detection", (), 2, True),
    ("safe journey", (), 2, False),
    ("open contacts", (), 3, False),
    ("encrypted chat", ("secure chat",), 2, False),
    ("mental health", ("counseling", "support"), 2, False),
    ("legal aid", ("legal help",), 2, False),
    ("evidence", ("collect evidence",), 2, False),
    ("cyber safety", (), 3, False),
    ("settings", (), 3, False),
]


class ConsoleStatusSink:
    def on_status(self, message: str, severity: StatusSeverity) -> None:
        if severity is StatusSeverity.BLOCKING:
            print(f"!! {message}", file=sys.stderr)
        else:
            print(f"[{severity.value}] {message}")


class App:
    def __init__(self, engine: str = "dashscope", vosk_model: str = "model") -> None:
        self.config_store = JsonConfigStore()
        self.config = self.config_store.load_engine_config()
        self._stopped = threading.Event()

        capture: SpeechCaptureSource
        if engine == "vosk":
            capture = VoskCaptureSource(model_path=vosk_model)
        else:
            capture = DashscopeCaptureSource(
                api_key=self.config_store.get_api_key(),
                assumed_confidence=self.config.assumed_confidence,
            )

        self.supervisor = RecognitionSupervisor(
            capture=capture,
            commands=self._build_commands(),
            config=self.config,
            audio_source=SoundDeviceAudioSource(),
            status_sink=ConsoleStatusSink(),
            on_state_change=self._on_state_change,
            on_partial=self._on_partial,
        )

    def _build_commands(self) -> list[CommandDescriptor]:
        commands = [
            CommandDescriptor(
                canonical_phrase=phrase,
                alternate_phrases=frozenset(alternates),
                priority=priority,
                is_critical=critical,
                action=self._announce(phrase),
            )
            for phrase, alternates, priority, critical in DEFAULT_COMMANDS
        ]
        commands.append(
            CommandDescriptor(
                canonical_phrase="vigilia help",
                alternate_phrases=frozenset({"help", "voice help"}),
                priority=3,
                action=lambda transcript, confidence: self._show_help(),
            )
        )
        return commands

    def _announce(self, phrase: str):
        def action(transcript: str, confidence: float) -> None:
            print(f">> {phrase} (heard '{transcript}', confidence {confidence:.2f})")

        return action

    def _show_help(self) -> None:
        print(self.supervisor.help_text())
        for entry in self.supervisor.describe_commands():
            alternatives = ", ".join(entry["alternatives"]) or "-"
            marker = "*" if entry["is_critical"] else " "
            print(f" {marker} {entry['command']:<18} p{entry['priority']}  {alternatives}")

    def _on_state_change(self, from_state: SessionState, to_state: SessionState) -> None:
        logger.info(f"{from_state.value} -> {to_state.value}")

    def _on_partial(self, text: str) -> None:
        print(f"... {text}", end="\r")

    def run(self) -> int:
        result = self.supervisor.setup()
        if result.error and self.supervisor.state is SessionState.FATAL_ERROR:
            self.supervisor.shutdown()
            return 1
        try:
            while not self._stopped.wait(timeout=1.0):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            self.quit()
        return 0

    def quit(self) -> None:
        self._stopped.set()
        metrics = self.supervisor.get_metrics()
        logger.info(
            f"Processed {metrics.commands_processed} commands "
            f"({metrics.critical_commands_processed} critical, {metrics.error_count} errors)"
        )
        self.supervisor.shutdown()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Vigilia voice command engine")
    parser.add_argument("--engine", choices=("dashscope", "vosk"), default="dashscope")
    parser.add_argument("--vosk-model", default="model", help="path to an unpacked Vosk model")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args(argv)

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if args.debug else "WARNING")

    app = App(engine=args.engine, vosk_model=args.vosk_model)
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
