"""
RollingBuffer: fixed-size sample accumulator for the speaker interrupt check.

Speech samples of the open chunk are pushed as they arrive. Each time
INTERRUPT_WINDOW_SAMPLES have accumulated, push() returns that window and the
buffer starts over, independent of the periodic probe cadence.
"""
from __future__ import annotations

import numpy as np

from segmenter.config import Settings, get_settings


class RollingBuffer:
    """Emits one window of exactly window_samples samples whenever it fills."""

    def __init__(self, settings: Settings | None = None, window_samples: int | None = None) -> None:
        settings = settings or get_settings()
        self._window_samples = window_samples or settings.INTERRUPT_WINDOW_SAMPLES
        self._parts: list[np.ndarray] = []
        self._count = 0

    @property
    def window_samples(self) -> int:
        return self._window_samples

    def __len__(self) -> int:
        return self._count

    def push(self, samples: np.ndarray) -> np.ndarray | None:
        """Append samples. Returns the newest full window when the buffer fills, else None."""
        samples = np.asarray(samples, dtype=np.float32)
        if len(samples) == 0:
            return None
        self._parts.append(samples)
        self._count += len(samples)
        if self._count < self._window_samples:
            return None

        joined = np.concatenate(self._parts)
        window = joined[-self._window_samples :]
        self.clear()
        return window

    def clear(self) -> None:
        self._parts = []
        self._count = 0
