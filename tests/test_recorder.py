"""Tests for SoundDeviceCapture."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from errors import DeviceError, DeviceNotFound, PermissionDenied
from recorder import SoundDeviceCapture, _to_capture_error, list_input_devices


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

def _make_indata(n_samples: int = 4096, value: float = 0.25) -> np.ndarray:
    """Shape matches what sounddevice hands the callback: (frames, channels)."""
    return np.full((n_samples, 1), value, dtype=np.float32)


def _open_started(mock_sd: MagicMock) -> tuple[SoundDeviceCapture, MagicMock]:
    stream = MagicMock()
    mock_sd.InputStream.return_value = stream
    capture = SoundDeviceCapture()
    capture.open()
    return capture, stream


# ---------------------------------------------------------------
# open / start / close
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_open_uses_fixed_mono_16k_configuration(mock_sd: MagicMock) -> None:
    capture, stream = _open_started(mock_sd)

    kwargs = mock_sd.InputStream.call_args.kwargs
    assert kwargs["samplerate"] == 16000
    assert kwargs["channels"] == 1
    assert kwargs["blocksize"] == 4096
    assert kwargs["dtype"] == "float32"
    assert capture.processing == {
        "echo_cancellation": True,
        "noise_suppression": True,
        "auto_gain_control": True,
    }
    # Opening acquires the device but does not deliver blocks yet.
    stream.start.assert_not_called()
    capture.close()


@patch("recorder.sd")
def test_open_is_idempotent(mock_sd: MagicMock) -> None:
    capture, _ = _open_started(mock_sd)
    capture.open()

    assert mock_sd.InputStream.call_count == 1
    capture.close()


@patch("recorder.sd")
def test_start_begins_delivery(mock_sd: MagicMock) -> None:
    capture, stream = _open_started(mock_sd)
    capture.start()
    capture.start()

    stream.start.assert_called_once()
    capture.close()


@patch("recorder.sd")
def test_start_before_open_raises(mock_sd: MagicMock) -> None:
    capture = SoundDeviceCapture()
    with pytest.raises(DeviceError):
        capture.start()


@patch("recorder.sd")
def test_close_releases_stream_and_is_idempotent(mock_sd: MagicMock) -> None:
    capture, stream = _open_started(mock_sd)
    capture.start()
    capture.close()
    capture.close()

    stream.abort.assert_called_once()
    stream.close.assert_called_once()
    assert capture.is_open is False


@patch("recorder.sd")
def test_close_releases_device_even_if_stopping_fails(mock_sd: MagicMock) -> None:
    capture, stream = _open_started(mock_sd)
    stream.abort.side_effect = RuntimeError("abort failed")
    stream.close.side_effect = RuntimeError("close failed")

    capture.close()  # should not raise

    stream.close.assert_called_once()


def test_open_without_sounddevice_raises_device_error(monkeypatch) -> None:  # noqa: ANN001
    import recorder as rec_mod
    monkeypatch.setattr(rec_mod, "sd", None)

    with pytest.raises(DeviceError, match="sounddevice is not available"):
        SoundDeviceCapture().open()


# ---------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_missing_default_device_maps_to_not_found(mock_sd: MagicMock) -> None:
    mock_sd.check_input_settings.side_effect = Exception("Error querying device -1")

    with pytest.raises(DeviceNotFound):
        SoundDeviceCapture().open()


@patch("recorder.sd")
def test_permission_error_maps_to_permission_denied(mock_sd: MagicMock) -> None:
    mock_sd.InputStream.side_effect = PermissionError("Operation not permitted")

    with pytest.raises(PermissionDenied):
        SoundDeviceCapture().open()


@patch("recorder.sd")
def test_other_failures_wrap_as_device_error_with_message(mock_sd: MagicMock) -> None:
    mock_sd.InputStream.side_effect = Exception("Invalid sample rate [PaErrorCode -9997]")

    with pytest.raises(DeviceError) as info:
        SoundDeviceCapture().open()

    assert "Invalid sample rate" in info.value.user_message


def test_error_mapping_keeps_capture_errors() -> None:
    original = DeviceNotFound("gone")
    assert _to_capture_error(original) is original
    assert isinstance(_to_capture_error(Exception("access denied by user")), PermissionDenied)
    assert isinstance(_to_capture_error(Exception("No input device matching 'usb'")), DeviceNotFound)


# ---------------------------------------------------------------
# Audio callback
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_callback_delivers_mono_float_blocks(mock_sd: MagicMock) -> None:
    capture, _ = _open_started(mock_sd)
    blocks: list[np.ndarray] = []
    capture.subscribe(blocks.append)
    capture.start()

    capture._on_audio(_make_indata(), frames=4096, time_info=None, status=None)

    assert len(blocks) == 1
    assert blocks[0].shape == (4096,)
    assert blocks[0].dtype == np.float32
    assert capture.blocks_delivered == 1
    capture.close()


@patch("recorder.sd")
def test_callback_before_start_is_noop(mock_sd: MagicMock) -> None:
    capture, _ = _open_started(mock_sd)
    callback = MagicMock()
    capture.subscribe(callback)

    capture._on_audio(_make_indata(), frames=4096, time_info=None, status=None)

    callback.assert_not_called()
    capture.close()


@patch("recorder.sd")
def test_callback_after_close_is_noop(mock_sd: MagicMock) -> None:
    capture, _ = _open_started(mock_sd)
    callback = MagicMock()
    capture.subscribe(callback)
    capture.start()
    capture.close()

    capture._on_audio(_make_indata(), frames=4096, time_info=None, status=None)

    callback.assert_not_called()


@patch("recorder.sd")
def test_subscriber_error_does_not_escape_callback(mock_sd: MagicMock) -> None:
    capture, _ = _open_started(mock_sd)
    capture.subscribe(MagicMock(side_effect=ValueError("boom")))
    capture.start()

    capture._on_audio(_make_indata(), frames=4096, time_info=None, status="input overflow")

    assert capture.callback_errors == 1
    assert capture.overflows == 1
    capture.close()


# ---------------------------------------------------------------
# Stream finished
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_unexpected_stream_end_reports_loss(mock_sd: MagicMock) -> None:
    capture, _ = _open_started(mock_sd)
    on_lost = MagicMock()
    capture.subscribe(MagicMock(), on_lost=on_lost)
    capture.start()

    capture._on_finished()

    on_lost.assert_called_once()
    capture.close()


@patch("recorder.sd")
def test_stream_end_after_close_is_not_a_loss(mock_sd: MagicMock) -> None:
    capture, _ = _open_started(mock_sd)
    on_lost = MagicMock()
    capture.subscribe(MagicMock(), on_lost=on_lost)
    capture.start()
    capture.close()

    capture._on_finished()

    on_lost.assert_not_called()


@patch("recorder.sd")
def test_list_input_devices_filters_outputs(mock_sd: MagicMock) -> None:
    mock_sd.query_devices.return_value = [
        {"name": "Speakers", "max_input_channels": 0, "default_samplerate": 48000.0},
        {"name": "Mic", "max_input_channels": 2, "default_samplerate": 44100.0},
    ]

    devices = list_input_devices()

    assert devices == [{"id": 1, "name": "Mic", "channels": 2, "sample_rate": 44100.0}]
