"""
Shared fixtures and deterministic model fakes.

- EnergyVAD: speech when the window's mean |x| exceeds a threshold.
- VoiceKeyEmbedder: one-hot "voice" keyed on the dominant sample level, so test audio
  filled with 0.3 is one speaker and 0.5 another.
Neither needs torch, resemblyzer or webrtcvad.
"""
from __future__ import annotations

import threading
import time
from typing import Iterable

import numpy as np
import pytest

from segmenter.audio.models import AudioFrame, CapturedFrame
from segmenter.audio.vad import VoiceActivityClassifier
from segmenter.config import Settings
from segmenter.diarization.embedding import SpeakerEmbedder

SAMPLE_RATE = 16000
FRAME_SECONDS = 0.05
FRAME_SAMPLES = int(SAMPLE_RATE * FRAME_SECONDS)

# Sample levels standing in for distinct voices
VOICE_A = 0.3
VOICE_B = 0.5
VOICE_LEVELS = (0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8)


class EnergyVAD(VoiceActivityClassifier):
    window_samples = 512
    hop_samples = 512

    def __init__(
        self,
        threshold: float = 0.05,
        fail_prepare: bool = False,
        fail_after: int | None = None,
        gate: threading.Event | None = None,
    ) -> None:
        super().__init__()
        self._threshold = threshold
        self._fail_prepare = fail_prepare
        self._fail_after = fail_after
        self._gate = gate
        self._loaded = False
        self.predictions = 0

    def prepare(self) -> None:
        if self._gate is not None:
            self._gate.wait(timeout=5.0)
        if self._fail_prepare:
            raise RuntimeError("VAD model unavailable")
        self._loaded = True

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def _predict(self, window: np.ndarray) -> float:
        self.predictions += 1
        if self._fail_after is not None and self.predictions > self._fail_after:
            raise RuntimeError("VAD inference failed")
        return 1.0 if float(np.mean(np.abs(window))) > self._threshold else 0.0

    def _reset_state(self) -> None:
        pass


class VoiceKeyEmbedder(SpeakerEmbedder):
    """One-hot embedding for whichever level in VOICE_LEVELS most samples sit on."""

    def __init__(
        self,
        settings: Settings | None = None,
        fail_prepare: bool = False,
        stall: float = 0.0,
        stall_after: int = 0,
    ) -> None:
        """stall: seconds every embed call sleeps once `stall_after` calls have gone through."""
        super().__init__(settings)
        self._fail_prepare = fail_prepare
        self._stall = stall
        self._stall_after = stall_after
        self._lock = threading.Lock()
        self._requests = 0
        self._loaded = False
        self.calls = 0

    def prepare(self) -> None:
        if self._fail_prepare:
            raise RuntimeError("embedding model unavailable")
        self._loaded = True

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def embed(self, samples, sample_rate, min_voiced_samples=None):
        with self._lock:
            self._requests += 1
            stalled = self._stall and self._requests > self._stall_after
        if stalled:
            time.sleep(self._stall)
        return super().embed(samples, sample_rate, min_voiced_samples)

    def _infer(self, wav: np.ndarray) -> np.ndarray:
        self.calls += 1
        counts = [int(np.count_nonzero(np.abs(np.abs(wav) - level) < 0.04)) for level in VOICE_LEVELS]
        vector = np.zeros(len(VOICE_LEVELS), dtype=np.float32)
        vector[int(np.argmax(counts))] = 1.0
        return vector


def voice_vector(level: float) -> np.ndarray:
    vector = np.zeros(len(VOICE_LEVELS), dtype=np.float32)
    vector[VOICE_LEVELS.index(level)] = 1.0
    return vector


def captured(
    level: float,
    seconds: float = FRAME_SECONDS,
    amplitude: float | None = None,
    sample_rate: int = SAMPLE_RATE,
) -> CapturedFrame:
    """Constant-level frame; amplitude defaults to the level itself."""
    count = int(round(seconds * sample_rate))
    return CapturedFrame(
        samples=np.full(count, level, dtype=np.float32),
        sample_rate=float(sample_rate),
        amplitude=level if amplitude is None else amplitude,
        duration=count / sample_rate,
        zero_crossing_rate=0.0,
    )


def frames_for(level: float, seconds: float) -> list[CapturedFrame]:
    return [captured(level) for _ in range(int(round(seconds / FRAME_SECONDS)))]


def timeline(*parts: tuple[float, float]) -> list[CapturedFrame]:
    """timeline((0.3, 4.0), (0.0, 1.5)) -> 4s of voice A then 1.5s of silence."""
    out: list[CapturedFrame] = []
    for level, seconds in parts:
        out.extend(frames_for(level, seconds))
    return out


def audio_frames(flags: Iterable[bool], duration: float = FRAME_SECONDS, level: float = VOICE_A) -> list[AudioFrame]:
    """Timeline frames from speech flags, for accumulator / boundary tests."""
    out: list[AudioFrame] = []
    for index, is_speech in enumerate(flags):
        count = int(round(duration * SAMPLE_RATE))
        out.append(
            AudioFrame(
                timestamp=index * duration,
                duration=duration,
                sample_rate=float(SAMPLE_RATE),
                amplitude=level if is_speech else 0.0,
                zero_crossing_rate=0.0,
                is_speech=is_speech,
                samples=np.full(count, level if is_speech else 0.0, dtype=np.float32),
            )
        )
    return out


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, EVENT_BUFFER_SIZE=100_000)


@pytest.fixture
def energy_vad() -> EnergyVAD:
    vad = EnergyVAD()
    vad.prepare()
    return vad


@pytest.fixture
def voice_embedder(settings) -> VoiceKeyEmbedder:
    embedder = VoiceKeyEmbedder(settings)
    embedder.prepare()
    return embedder
