"""Pipeline settings, JSON-backed config store and logging setup."""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlencode

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "wss://api.deepgram.com/v1/listen"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
API_KEY_ENV = "DEEPGRAM_API_KEY"


@dataclass
class PipelineSettings:
    api_key: str = ""
    endpoint: str = DEFAULT_ENDPOINT
    model: str = "nova-2"
    language: str = "en"
    smart_format: bool = True
    punctuate: bool = True
    interim_results: bool = True
    sample_rate: int = 16000
    block_size: int = 4096
    channels: int = 1
    connect_timeout_s: float = 10.0
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    device: Optional[Union[int, str]] = None
    speaker_role: str = "customer"
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineSettings":
        """Build settings from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})

    def resolved_api_key(self) -> str:
        return self.api_key or os.getenv(API_KEY_ENV, "")


def build_listen_url(settings: PipelineSettings) -> str:
    """Streaming endpoint URL with the recognition parameters in the query."""

    def flag(value: bool) -> str:
        return "true" if value else "false"

    query = urlencode({
        "model": settings.model,
        "language": settings.language,
        "smart_format": flag(settings.smart_format),
        "interim_results": flag(settings.interim_results),
        "punctuate": flag(settings.punctuate),
        "encoding": "linear16",
        "sample_rate": settings.sample_rate,
    })
    return f"{settings.endpoint}?{query}"


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "callsteer" / "config.json"

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> PipelineSettings:
        return PipelineSettings.from_dict(self._read_all())

    def save(self, settings: PipelineSettings) -> None:
        self._write_all(asdict(settings))

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Config file %s unreadable, using defaults: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


def setup_logging(level: Optional[str] = None, format: str = DEFAULT_LOG_FORMAT) -> None:
    """Configure the root logger; level defaults to LOG_LEVEL or INFO."""
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format=format, stream=sys.stdout)
    logging.getLogger().setLevel(log_level)
    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(max(log_level, logging.INFO))
