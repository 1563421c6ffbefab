"""Microphone capture: level metering and streaming resample to 16 kHz PCM."""

from __future__ import annotations

import threading
import time
from queue import Full, Queue
from typing import Any, Optional

import numpy as np

from errors import CONFIGURATION_ERROR, PERMISSION_DENIED, CaptureError
from models import AudioFrame

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

WIRE_SAMPLE_RATE = 16000
LEVEL_GAIN = 5.0

_PERMISSION_HINTS = ("permission", "not authorized", "access denied", "unauthorized")


def compute_level(samples: np.ndarray, gain: float = LEVEL_GAIN) -> float:
    """Mean absolute amplitude scaled by ``gain`` and clamped to [0, 1]."""
    if samples.size == 0:
        return 0.0
    level = float(np.mean(np.abs(samples))) * gain
    return min(max(level, 0.0), 1.0)


def to_pcm16(samples: np.ndarray) -> np.ndarray:
    scaled = np.clip(np.round(samples * 32767.0), -32768, 32767)
    return scaled.astype(np.int16)


class StreamingResampler:
    """Linear-interpolation resampler that keeps its phase between buffers.

    The read position of the next output sample and the previous buffer's
    last sample are carried over, so a stream cut into arbitrary buffers
    resamples to the same output as the stream in one piece.
    """

    def __init__(self, input_rate: int, output_rate: int = WIRE_SAMPLE_RATE) -> None:
        if input_rate <= 0 or output_rate <= 0:
            raise ValueError("sample rates must be positive")
        self.input_rate = input_rate
        self.output_rate = output_rate
        self._step = input_rate / output_rate
        self._pos = 0.0
        self._last: Optional[float] = None

    def reset(self) -> None:
        self._pos = 0.0
        self._last = None

    def process(self, samples: np.ndarray) -> np.ndarray:
        samples = np.asarray(samples, dtype=np.float64).reshape(-1)
        if samples.size == 0:
            return np.zeros(0, dtype=np.float64)
        if self._last is None:
            buf = samples
        else:
            buf = np.concatenate(([self._last], samples))
        end = buf.size - 1
        if self._pos > end:
            count = 0
        else:
            count = int(np.floor((end - self._pos) / self._step)) + 1
        positions = self._pos + self._step * np.arange(count)
        out = np.interp(positions, np.arange(buf.size), buf)
        # Rebase onto the next buffer, whose index 0 is this buffer's last sample.
        self._pos = self._pos + self._step * count - end
        self._last = float(buf[-1])
        return out


class AudioCaptureEngine:
    def __init__(
        self,
        target_rate: int = WIRE_SAMPLE_RATE,
        blocksize: int = 1024,
        level_gain: float = LEVEL_GAIN,
        device: Any = None,
    ) -> None:
        self.target_rate = target_rate
        self.blocksize = blocksize
        self.level_gain = level_gain
        self.device = device
        self.native_rate = 0
        self.native_channels = 0
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self._resampler: Optional[StreamingResampler] = None
        self.dropped_chunks = 0
        self._audio_queue: Queue[AudioFrame | None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None:
                raise CaptureError(CONFIGURATION_ERROR, "sounddevice is not installed")
            rate, channels = self._query_native_format()
            self.native_rate = rate
            self.native_channels = channels
            self._resampler = StreamingResampler(rate, self.target_rate)
            self._audio_queue = audio_queue
            self.dropped_chunks = 0
            try:
                self._stream = sd.InputStream(
                    samplerate=rate,
                    channels=channels,
                    dtype="float32",
                    blocksize=self.blocksize,
                    device=self.device,
                    callback=self._on_audio,
                )
                # Set before start(): the callback may fire immediately.
                self._running = True
                self._stream.start()
            except Exception as exc:
                self._running = False
                self._close_stream()
                raise _capture_error(exc) from exc

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                self._emit_sentinel_if_needed()
                return
            self._running = False
            self._close_stream()
            self._emit_sentinel_if_needed()

    def _query_native_format(self) -> tuple[int, int]:
        try:
            info = sd.query_devices(self.device, kind="input")
        except Exception as exc:
            raise _capture_error(exc) from exc
        rate = int(round(float(info["default_samplerate"])))
        channels = int(info["max_input_channels"])
        if rate <= 0 or channels <= 0:
            raise CaptureError(
                CONFIGURATION_ERROR,
                f"input device reports unusable format ({rate} Hz, {channels} ch)",
            )
        return rate, min(channels, 2)

    def _close_stream(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        # Audio thread: no locks, no logging, no blocking calls.
        audio_queue = self._audio_queue
        resampler = self._resampler
        if not self._running or audio_queue is None or resampler is None:
            return
        data = np.asarray(indata, dtype=np.float32)
        if data.ndim == 1:
            data = data.reshape(-1, 1)
        level = compute_level(data[:, 0], self.level_gain)
        mono = data.mean(axis=1) if data.shape[1] > 1 else data[:, 0]
        pcm = to_pcm16(resampler.process(mono))
        frame = AudioFrame(
            pcm16_bytes=pcm.tobytes(),
            sample_rate=self.target_rate,
            channels=1,
            frame_count=int(pcm.size),
            timestamp_ms=int(time.time() * 1000),
            level=level,
        )
        try:
            audio_queue.put_nowait(frame)
        except Full:
            self.dropped_chunks += 1

    def _emit_sentinel_if_needed(self) -> None:
        if self._audio_queue is None:
            return
        try:
            self._audio_queue.put_nowait(None)
        except Full:
            pass


def _capture_error(exc: Exception) -> CaptureError:
    message = str(exc)
    if any(hint in message.lower() for hint in _PERMISSION_HINTS):
        return CaptureError(PERMISSION_DENIED, message)
    return CaptureError(CONFIGURATION_ERROR, message)
