"""Microphone capture adapter."""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Union

import numpy as np

from errors import CaptureError, DeviceError, DeviceNotFound, PermissionDenied
from interfaces import BlockCallback, LostCallback

try:
    import sounddevice as sd
except Exception:  # pragma: no cover - PortAudio library missing
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

_PERMISSION_MARKERS = ("permission", "not permitted", "access denied", "not authorized")
_NOT_FOUND_MARKERS = (
    "querying device -1",
    "no input device",
    "no default input",
    "invalid device",
    "no device",
)


def _to_capture_error(exc: Exception) -> CaptureError:
    """Map a PortAudio/OS exception to one of the capture error kinds."""
    if isinstance(exc, CaptureError):
        return exc
    message = str(exc)
    low = message.lower()
    if isinstance(exc, PermissionError) or any(m in low for m in _PERMISSION_MARKERS):
        return PermissionDenied(message)
    if any(m in low for m in _NOT_FOUND_MARKERS):
        return DeviceNotFound(message)
    return DeviceError(message)


class SoundDeviceCapture:
    """Owns one input stream and delivers fixed-size float32 blocks."""

    def __init__(
        self,
        sample_rate: int = 16000,
        block_size: int = 4096,
        channels: int = 1,
        device: Optional[Union[int, str]] = None,
        echo_cancellation: bool = True,
        noise_suppression: bool = True,
        auto_gain_control: bool = True,
    ) -> None:
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.channels = channels
        self.device = device
        self.processing = {
            "echo_cancellation": echo_cancellation,
            "noise_suppression": noise_suppression,
            "auto_gain_control": auto_gain_control,
        }
        self._stream: Any = None
        self._running = False
        self._closing = False
        self._lock = threading.Lock()
        self._callback: Optional[BlockCallback] = None
        self._on_lost: Optional[LostCallback] = None
        self.blocks_delivered = 0
        self.overflows = 0
        self.callback_errors = 0

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def open(self) -> None:
        with self._lock:
            if self._stream is not None:
                return
            if sd is None:
                raise DeviceError("sounddevice is not available")
            logger.info(
                "Opening microphone: %sHz, %sch, block=%s, processing=%s",
                self.sample_rate,
                self.channels,
                self.block_size,
                self.processing,
            )
            try:
                sd.check_input_settings(
                    device=self.device,
                    channels=self.channels,
                    dtype="float32",
                    samplerate=self.sample_rate,
                )
                self._stream = sd.InputStream(
                    device=self.device,
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="float32",
                    blocksize=self.block_size,
                    callback=self._on_audio,
                    finished_callback=self._on_finished,
                )
            except Exception as exc:
                raise _to_capture_error(exc) from exc
            self._closing = False

    def subscribe(self, callback: BlockCallback, on_lost: Optional[LostCallback] = None) -> None:
        self._callback = callback
        self._on_lost = on_lost

    def start(self) -> None:
        with self._lock:
            if self._stream is None:
                raise DeviceError("capture is not open")
            if self._running:
                return
            try:
                self._stream.start()
            except Exception as exc:
                raise _to_capture_error(exc) from exc
            self._running = True
            logger.info("Microphone streaming started")

    def close(self) -> None:
        with self._lock:
            stream = self._stream
            self._stream = None
            self._closing = True
            self._running = False
            self._callback = None
            self._on_lost = None
        if stream is None:
            return

        try:
            stream.abort()
        except Exception as exc:
            logger.warning("Stopping audio stream failed: %s", exc)
        try:
            stream.close()
        except Exception as exc:
            logger.warning("Releasing audio device failed: %s", exc)
        logger.info(
            "Microphone closed (blocks=%s, overflows=%s)",
            self.blocks_delivered,
            self.overflows,
        )

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if status:
            self.overflows += 1
        callback = self._callback
        if not self._running or callback is None:
            return
        block = np.array(indata[:, 0] if indata.ndim == 2 else indata, dtype=np.float32)
        self.blocks_delivered += 1
        try:
            callback(block)
        except Exception as exc:
            # Raising here would abort the PortAudio stream.
            self.callback_errors += 1
            logger.error("Audio block callback error: %s", exc)

    def _on_finished(self) -> None:
        on_lost = self._on_lost
        if self._closing or on_lost is None:
            return
        self._running = False
        on_lost("audio stream stopped unexpectedly")


def list_input_devices() -> list[dict]:
    """List available audio input devices."""
    if sd is None:
        return []
    devices = []
    for i, device in enumerate(sd.query_devices()):
        if device["max_input_channels"] > 0:
            devices.append({
                "id": i,
                "name": device["name"],
                "channels": device["max_input_channels"],
                "sample_rate": device["default_samplerate"],
            })
    return devices
