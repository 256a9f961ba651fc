"""
AudioReceiver: accepts raw PCM audio from WebSocket and yields captured frames.

- Expects PCM 16-bit mono at SAMPLE_RATE.
- Emits fixed-size frames (CAPTURE_FRAME_SAMPLES, e.g. 1024 = 64ms @ 16kHz)
  with amplitude and zero-crossing rate already computed.
"""
from __future__ import annotations

import numpy as np

from segmenter.audio.models import CapturedFrame
from segmenter.config import Settings, get_settings


def pcm_bytes_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """Convert PCM 16-bit mono bytes to float32 [-1.0, 1.0]."""
    samples = np.frombuffer(pcm_bytes, dtype=np.int16)
    return samples.astype(np.float32) / 32768.0


def normalized_amplitude(samples: np.ndarray, gain: float = 12.0) -> float:
    """RMS scaled by gain and clamped to [0, 1]."""
    if len(samples) == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
    return min(max(rms * gain, 0.0), 1.0)


def zero_crossing_rate(samples: np.ndarray) -> float:
    """Sign changes between neighbouring samples / (n - 1). Zero counts as positive."""
    n = len(samples)
    if n < 2:
        return 0.0
    negative = np.asarray(samples) < 0
    crossings = int(np.count_nonzero(negative[1:] != negative[:-1]))
    return crossings / (n - 1)


def frame_from_samples(
    samples: np.ndarray,
    sample_rate: float,
    gain: float | None = None,
) -> CapturedFrame:
    """Build a CapturedFrame from mono float samples."""
    if gain is None:
        gain = get_settings().AMPLITUDE_GAIN
    samples = np.asarray(samples, dtype=np.float32)
    duration = len(samples) / sample_rate if sample_rate > 0 else 0.0
    return CapturedFrame(
        samples=samples,
        sample_rate=float(sample_rate),
        amplitude=normalized_amplitude(samples, gain),
        duration=duration,
        zero_crossing_rate=zero_crossing_rate(samples),
    )


class AudioReceiver:
    """
    Buffers incoming binary WebSocket messages into fixed-size captured frames.
    Any remainder is kept for the next message.
    """

    def __init__(self, settings: Settings | None = None, frame_samples: int | None = None) -> None:
        settings = settings or get_settings()
        self._frame_samples = frame_samples or settings.CAPTURE_FRAME_SAMPLES
        self._frame_bytes = self._frame_samples * 2
        self._sample_rate = settings.SAMPLE_RATE
        self._gain = settings.AMPLITUDE_GAIN
        self._buffer = bytearray()

    def feed(self, data: bytes) -> None:
        """Append raw PCM bytes. Call from WebSocket handler."""
        self._buffer.extend(data)

    def drain_frames(self) -> list[CapturedFrame]:
        """
        Drain all complete frames from the buffer.
        Returns list of full frames; remainder stays in buffer.
        """
        out: list[CapturedFrame] = []
        while len(self._buffer) >= self._frame_bytes:
            chunk = bytes(self._buffer[: self._frame_bytes])
            del self._buffer[: self._frame_bytes]
            out.append(frame_from_samples(pcm_bytes_to_float32(chunk), self._sample_rate, self._gain))
        return out

    def flush(self) -> CapturedFrame | None:
        """On disconnect: turn the incomplete remainder into a short frame (odd trailing byte dropped)."""
        usable = len(self._buffer) - (len(self._buffer) % 2)
        if usable <= 0:
            self._buffer.clear()
            return None
        chunk = bytes(self._buffer[:usable])
        self._buffer.clear()
        return frame_from_samples(pcm_bytes_to_float32(chunk), self._sample_rate, self._gain)

    def remaining_bytes(self) -> int:
        """Bytes left in buffer (incomplete frame)."""
        return len(self._buffer)
