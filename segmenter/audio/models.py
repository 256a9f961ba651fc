"""
Frame structures shared by the audio pipeline.

- CapturedFrame: what the capture side delivers (one buffer, features precomputed).
- AudioFrame: a captured frame placed on the session timeline with its speech verdict.
  Immutable; owned by the chunk accumulator once appended.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np


@dataclass(frozen=True)
class CapturedFrame:
    """
    One capture buffer.

    samples: float32 mono [-1, 1].
    amplitude: normalized loudness 0..1.
    duration: seconds (len(samples) / sample_rate).
    """

    samples: np.ndarray
    sample_rate: float
    amplitude: float
    duration: float
    zero_crossing_rate: float

    def is_valid(self) -> bool:
        """Empty buffers and non-positive sample rates are skipped by the pipeline."""
        return self.sample_rate > 0 and self.samples is not None and len(self.samples) > 0


@dataclass(frozen=True)
class AudioFrame:
    """Captured frame on the session timeline. timestamp: seconds since session start."""

    timestamp: float
    duration: float
    sample_rate: float
    amplitude: float
    zero_crossing_rate: float
    is_speech: bool
    samples: np.ndarray

    @property
    def end(self) -> float:
        return self.timestamp + self.duration


def chunk_duration(frames: Sequence[AudioFrame]) -> float:
    """last.timestamp + last.duration - first.timestamp; 0 for an empty chunk."""
    if not frames:
        return 0.0
    return max(frames[-1].end - frames[0].timestamp, 0.0)


def speech_seconds(frames: Sequence[AudioFrame]) -> float:
    return sum(f.duration for f in frames if f.is_speech)


def concat_samples(frames: Sequence[AudioFrame]) -> np.ndarray:
    if not frames:
        return np.zeros(0, dtype=np.float32)
    return np.concatenate([np.asarray(f.samples, dtype=np.float32) for f in frames])
