"""Tests for AudioCaptureEngine and the streaming resampler."""

from __future__ import annotations

from queue import Queue
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from errors import CONFIGURATION_ERROR, PERMISSION_DENIED, CaptureError
from models import AudioFrame
from recorder import AudioCaptureEngine, StreamingResampler, compute_level, to_pcm16


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

def _device(rate: float = 48000.0, channels: int = 1) -> dict:
    return {"name": "Test Mic", "default_samplerate": rate, "max_input_channels": channels}


def _chunks(samples: np.ndarray, size: int):
    for i in range(0, samples.size, size):
        yield samples[i:i + size]


# ---------------------------------------------------------------
# Level metering
# ---------------------------------------------------------------

def test_silence_gives_stable_zero_level() -> None:
    silence = np.zeros(1024, dtype=np.float32)
    levels = [compute_level(silence) for _ in range(20)]
    assert levels == [0.0] * 20


def test_level_is_scaled_mean_amplitude() -> None:
    assert compute_level(np.full(512, 0.1, dtype=np.float32)) == pytest.approx(0.5)
    assert compute_level(np.full(512, -0.1, dtype=np.float32)) == pytest.approx(0.5)


def test_level_is_clamped_to_one() -> None:
    assert compute_level(np.full(256, 0.9, dtype=np.float32)) == 1.0


def test_level_of_empty_buffer_is_zero() -> None:
    assert compute_level(np.zeros(0, dtype=np.float32)) == 0.0


# ---------------------------------------------------------------
# Resampling
# ---------------------------------------------------------------

def test_one_second_of_48k_silence_gives_16000_samples() -> None:
    resampler = StreamingResampler(48000, 16000)
    silence = np.zeros(48000, dtype=np.float32)

    out = np.concatenate([resampler.process(c) for c in _chunks(silence, 1024)])

    assert abs(out.size - 16000) <= 1
    assert np.all(np.abs(to_pcm16(out)) <= 1)


def test_chunked_output_matches_single_pass() -> None:
    t = np.arange(44100) / 44100.0
    tone = (0.5 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)

    whole = StreamingResampler(44100, 16000).process(tone)
    streaming = StreamingResampler(44100, 16000)
    chunked = np.concatenate([streaming.process(c) for c in _chunks(tone, 441)])

    assert chunked.size == whole.size
    np.testing.assert_allclose(chunked, whole, atol=1e-6)


def test_same_rate_passes_through() -> None:
    data = np.linspace(-0.5, 0.5, 100)
    out = StreamingResampler(16000, 16000).process(data)
    np.testing.assert_allclose(out, data)


def test_invalid_rate_rejected() -> None:
    with pytest.raises(ValueError):
        StreamingResampler(0, 16000)


def test_pcm16_conversion_clips() -> None:
    pcm = to_pcm16(np.array([2.0, -2.0, 0.0]))
    assert pcm.dtype == np.int16
    assert list(pcm) == [32767, -32768, 0]


# ---------------------------------------------------------------
# Start / stop
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_start_opens_stream_at_native_format(mock_sd: MagicMock) -> None:
    mock_sd.query_devices.return_value = _device(48000.0, 2)
    mock_stream = MagicMock()
    mock_sd.InputStream.return_value = mock_stream

    engine = AudioCaptureEngine()
    q: Queue[AudioFrame | None] = Queue()
    engine.start(q)

    kwargs = mock_sd.InputStream.call_args.kwargs
    assert kwargs["samplerate"] == 48000
    assert kwargs["channels"] == 2
    assert kwargs["dtype"] == "float32"
    mock_stream.start.assert_called_once()

    engine.stop()
    mock_stream.stop.assert_called_once()
    mock_stream.close.assert_called_once()
    assert q.get_nowait() is None


@patch("recorder.sd")
def test_start_is_idempotent(mock_sd: MagicMock) -> None:
    mock_sd.query_devices.return_value = _device()
    mock_sd.InputStream.return_value = MagicMock()

    engine = AudioCaptureEngine()
    q: Queue[AudioFrame | None] = Queue()
    engine.start(q)
    engine.start(q)

    assert mock_sd.InputStream.call_count == 1
    engine.stop()


@patch("recorder.sd")
def test_unusable_device_is_configuration_error(mock_sd: MagicMock) -> None:
    mock_sd.query_devices.return_value = _device(0.0, 0)

    engine = AudioCaptureEngine()
    with pytest.raises(CaptureError) as info:
        engine.start(Queue())

    assert info.value.code == CONFIGURATION_ERROR
    mock_sd.InputStream.assert_not_called()


@patch("recorder.sd")
def test_authorization_failure_is_permission_denied(mock_sd: MagicMock) -> None:
    mock_sd.query_devices.return_value = _device()
    mock_sd.InputStream.side_effect = Exception("Error opening InputStream: Permission denied")

    engine = AudioCaptureEngine()
    with pytest.raises(CaptureError) as info:
        engine.start(Queue())

    assert info.value.code == PERMISSION_DENIED
    assert engine.running is False


def test_start_raises_without_sounddevice(monkeypatch) -> None:  # noqa: ANN001
    import recorder as rec_mod
    monkeypatch.setattr(rec_mod, "sd", None)

    engine = AudioCaptureEngine()
    with pytest.raises(CaptureError, match="sounddevice is not installed"):
        engine.start(Queue())


# ---------------------------------------------------------------
# Audio callback
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_callback_pushes_resampled_mono_frames(mock_sd: MagicMock) -> None:
    mock_sd.query_devices.return_value = _device(48000.0, 2)
    mock_sd.InputStream.return_value = MagicMock()

    engine = AudioCaptureEngine()
    q: Queue[AudioFrame | None] = Queue()
    engine.start(q)

    indata = np.full((1024, 2), 0.1, dtype=np.float32)
    engine._on_audio(indata, frames=1024, time_info=None, status=None)

    frame = q.get_nowait()
    assert isinstance(frame, AudioFrame)
    assert frame.sample_rate == 16000
    assert frame.channels == 1
    assert frame.frame_count == 342
    assert len(frame.pcm16_bytes) == frame.frame_count * 2
    assert frame.level == pytest.approx(0.5)
    samples = np.frombuffer(frame.pcm16_bytes, dtype=np.int16)
    assert np.all(np.abs(samples - 3277) <= 1)

    engine.stop()


@patch("recorder.sd")
def test_queue_full_increments_dropped_chunks(mock_sd: MagicMock) -> None:
    mock_sd.query_devices.return_value = _device(16000.0, 1)
    mock_sd.InputStream.return_value = MagicMock()

    engine = AudioCaptureEngine()
    q: Queue[AudioFrame | None] = Queue(maxsize=1)
    engine.start(q)

    indata = np.zeros((160, 1), dtype=np.float32)
    engine._on_audio(indata, frames=160, time_info=None, status=None)
    assert engine.dropped_chunks == 0

    engine._on_audio(indata, frames=160, time_info=None, status=None)
    assert engine.dropped_chunks == 1

    engine.stop()


@patch("recorder.sd")
def test_callback_after_stop_is_noop(mock_sd: MagicMock) -> None:
    mock_sd.query_devices.return_value = _device()
    mock_sd.InputStream.return_value = MagicMock()

    engine = AudioCaptureEngine()
    q: Queue[AudioFrame | None] = Queue()
    engine.start(q)
    engine.stop()
    q.get_nowait()

    engine._on_audio(np.zeros((1024, 1), dtype=np.float32), frames=1024, time_info=None, status=None)
    assert q.empty()
