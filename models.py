"""Core data models for the capture and transcription pipeline."""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

_ID_ALPHABET = string.digits + string.ascii_lowercase


class PipelineState(str, Enum):
    IDLE = "IDLE"
    STARTING = "STARTING"
    ACTIVE = "ACTIVE"
    STOPPING = "STOPPING"
    FAILED = "FAILED"


class ConnectionState(str, Enum):
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


class RecognitionKind(str, Enum):
    PARTIAL = "partial"
    FINAL = "final"
    CLOSED = "closed"


class StatusKind(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"


@dataclass
class RecognitionEvent:
    kind: RecognitionKind
    text: str = ""
    code: str = ""
    message: str = ""


@dataclass
class TranscriptEvent:
    text: str
    speaker: str
    session_id: str


def new_session_id(now: Optional[float] = None) -> str:
    """Return ``call_<epoch-ms>_<9 random base36 chars>``."""
    stamp = int((time.time() if now is None else now) * 1000)
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(9))
    return f"call_{stamp}_{suffix}"


@dataclass
class CallSession:
    session_id: str
    started_at: float

    @classmethod
    def begin(cls, now: float) -> "CallSession":
        return cls(session_id=new_session_id(now), started_at=now)


@dataclass
class CallSummary:
    session_id: Optional[str] = None
    duration_s: float = 0.0
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    frames_sent: int = 0
    frames_dropped: int = 0
