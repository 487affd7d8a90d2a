"""Engine configuration and the JSON-based config store."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path

LANGUAGE_MAP = {
    "en": "en-US",
    "es": "es-ES",
    "fr": "fr-FR",
    "sw": "sw-KE",
    "de": "de-DE",
    "hi": "hi-IN",
    "ar": "ar-SA",
    "zh": "zh-CN",
    "ja": "ja-JP",
    "ko": "ko-KR",
}
DEFAULT_LANGUAGE = "en-US"


def normalize_language(tag: str | None) -> str:
    """Expand a short language code ('en') to a full tag ('en-US')."""
    if not tag:
        return DEFAULT_LANGUAGE
    return LANGUAGE_MAP.get(tag.strip().lower(), tag.strip())


@dataclass
class EngineConfig:
    language: str = DEFAULT_LANGUAGE
    continuous: bool = True
    interim_results: bool = True
    auto_restart: bool = True
    fuzzy_threshold: float = 0.4
    min_confidence: float = 0.5
    max_confidence: float = 0.99
    assumed_confidence: float = 0.9
    max_retries: int = 5
    base_delay_s: float = 2.0
    sensitivity: float = 0.08
    whisper_sensitivity: float = 0.03
    sample_interval_s: float = 0.1
    misrecognized_capacity: int = 500
    log_capacity: int = 500

    def __post_init__(self) -> None:
        self.language = normalize_language(self.language)

    def validate(self) -> None:
        if not 0.0 <= self.fuzzy_threshold <= 1.0:
            raise ValueError("fuzzy_threshold must be between 0 and 1")
        if not 0.0 <= self.min_confidence <= self.max_confidence:
            raise ValueError(f"min_confidence must be between 0 and {self.max_confidence}")
        if self.max_confidence > 0.99:
            raise ValueError("max_confidence must not exceed 0.99")
        if not 0.0 <= self.whisper_sensitivity <= self.sensitivity:
            raise ValueError("whisper_sensitivity must be between 0 and sensitivity")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.base_delay_s < 0 or self.sample_interval_s <= 0:
            raise ValueError("delays must be positive")


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "vigilia_voice" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("api_key", ""))

    def set_api_key(self, key: str) -> None:
        data = self._read_all()
        data["api_key"] = key
        self._write_all(data)

    def load_engine_config(self) -> EngineConfig:
        stored = self._read_all().get("engine", {})
        if not isinstance(stored, dict):
            return EngineConfig()
        known = {f.name for f in fields(EngineConfig)}
        try:
            config = EngineConfig(**{k: v for k, v in stored.items() if k in known})
            config.validate()
        except (TypeError, ValueError):
            return EngineConfig()
        return config

    def save_engine_config(self, config: EngineConfig) -> None:
        config.validate()
        data = self._read_all()
        data["engine"] = asdict(config)
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
