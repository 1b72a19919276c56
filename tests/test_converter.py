from __future__ import annotations

import numpy as np

from converter import float_to_int16, to_pcm_frame


def test_full_scale_values_hit_int16_limits() -> None:
    out = float_to_int16([1.0, -1.0, 0.0])
    assert out.tolist() == [32767, -32768, 0]


def test_out_of_range_samples_are_clamped() -> None:
    out = float_to_int16([2.5, -7.0])
    assert out.tolist() == [32767, -32768]


def test_asymmetric_scaling_truncates_toward_zero() -> None:
    out = float_to_int16([0.5, -0.5, 0.25, -0.25, 1e-6, -1e-6])
    # 0.5 * 32767 = 16383.5 and 0.25 * 32767 = 8191.75 truncate down.
    assert out.tolist() == [16383, -16384, 8191, -8192, 0, 0]


def test_nan_converts_to_silence() -> None:
    out = float_to_int16([float("nan"), 0.1])
    assert out[0] == 0
    assert out[1] == 3276


def test_pcm_frame_is_little_endian_two_bytes_per_sample() -> None:
    frame = to_pcm_frame(np.array([1.0, -1.0], dtype=np.float32))
    assert frame == b"\xff\x7f\x00\x80"


def test_frame_length_is_twice_block_length() -> None:
    block = np.random.default_rng(0).uniform(-1.0, 1.0, 4096).astype(np.float32)
    assert len(to_pcm_frame(block)) == 8192


def test_reconversion_of_decoded_value_is_stable() -> None:
    block = np.random.default_rng(1).uniform(-1.0, 1.0, 512)
    first = float_to_int16(block)
    decoded = np.where(first < 0, first / 32768.0, first / 32767.0)
    second = float_to_int16(decoded)
    assert np.all(np.abs(second.astype(int) - first.astype(int)) <= 1)


def test_empty_block_yields_empty_frame() -> None:
    assert to_pcm_frame([]) == b""
