"""Protocol interfaces used by PipelineController."""

from __future__ import annotations

from typing import Callable, Optional, Protocol

import numpy as np

from models import ConnectionState, RecognitionEvent

BlockCallback = Callable[[np.ndarray], None]
LostCallback = Callable[[str], None]
EventCallback = Callable[[RecognitionEvent], None]


class CaptureSource(Protocol):
    def open(self) -> None: ...

    def subscribe(self, callback: BlockCallback, on_lost: Optional[LostCallback] = None) -> None: ...

    def start(self) -> None: ...

    def close(self) -> None: ...


class TranscriptionSession(Protocol):
    frames_sent: int
    frames_dropped: int

    @property
    def state(self) -> ConnectionState: ...

    def connect(self) -> None: ...

    def send(self, frame: bytes) -> None: ...

    def close(self) -> None: ...


CaptureFactory = Callable[[], CaptureSource]
SessionFactory = Callable[[EventCallback], TranscriptionSession]
