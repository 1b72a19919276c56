"""Float sample to signed 16-bit little-endian PCM conversion."""

from __future__ import annotations

from typing import Sequence, Union

import numpy as np

PCM16_LE = np.dtype("<i2")

BlockLike = Union[np.ndarray, Sequence[float]]


def float_to_int16(block: BlockLike) -> np.ndarray:
    """Convert normalized float samples to int16.

    Samples are clamped to [-1.0, 1.0]; negative values scale by 32768 and
    non-negative values by 32767, then truncate toward zero. NaN becomes 0.
    """
    samples = np.asarray(block, dtype=np.float64).reshape(-1)
    samples = np.nan_to_num(samples, nan=0.0, posinf=1.0, neginf=-1.0)
    clipped = np.clip(samples, -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return np.trunc(scaled).astype(PCM16_LE)


def to_pcm_frame(block: BlockLike) -> bytes:
    """Encode one audio block as the raw bytes sent over the wire."""
    return float_to_int16(block).tobytes()
