"""
SpeakerEmbedder: fixed-length speaker embedding over a window of samples.

- Input is resampled to 16 kHz and leading/trailing near-silence is trimmed.
- Returns None when too little voiced audio remains (default 1.5s; the interrupt
  check passes a smaller minimum for its short window).
- Longer input is centre-cropped to the model window (default 10s).
- Output is unit-normalized. Stateless across calls.

Backend: resemblyzer VoiceEncoder (GE2E), CPU-friendly. Imported in prepare().
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import numpy as np

from segmenter.audio.vad import MODEL_SAMPLE_RATE, resample_to_16k
from segmenter.config import Settings, get_settings
from segmenter.diarization.models import normalize

logger = logging.getLogger(__name__)


class EmbeddingUnavailableError(RuntimeError):
    """Embedding requested before the model was prepared."""


def trim_silence_edges(samples: np.ndarray, threshold: float) -> np.ndarray:
    """Drop leading/trailing samples with |x| < threshold."""
    voiced = np.flatnonzero(np.abs(samples) >= threshold)
    if len(voiced) == 0:
        return samples[:0]
    return samples[voiced[0] : voiced[-1] + 1]


def fit_to_window(samples: np.ndarray, window_samples: int) -> np.ndarray:
    """Centre-crop to window_samples; shorter input is returned as is."""
    if len(samples) <= window_samples:
        return samples
    start = (len(samples) - window_samples) // 2
    return samples[start : start + window_samples]


class SpeakerEmbedder(ABC):
    """Base adapter: window handling here, model inference in subclasses."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._window_samples = int(settings.EMBEDDING_WINDOW_SECONDS * MODEL_SAMPLE_RATE)
        self._min_samples = int(settings.EMBEDDING_MIN_VOICED_SECONDS * MODEL_SAMPLE_RATE)
        self._trim_threshold = settings.EMBEDDING_TRIM_THRESHOLD

    @abstractmethod
    def prepare(self) -> None:
        """Load the model (blocking; run in executor). Idempotent."""
        ...

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        ...

    @abstractmethod
    def _infer(self, wav: np.ndarray) -> np.ndarray:
        """Raw embedding for 16 kHz float32 audio."""
        ...

    def embed(
        self,
        samples: np.ndarray,
        sample_rate: float,
        min_voiced_samples: int | None = None,
    ) -> np.ndarray | None:
        """
        Unit-normalized embedding, or None if the voiced content is too short.
        min_voiced_samples: override of the minimum (16 kHz samples).
        """
        if not self.is_loaded:
            raise EmbeddingUnavailableError("speaker embedding model not prepared")
        converted = resample_to_16k(samples, sample_rate)
        trimmed = trim_silence_edges(converted, self._trim_threshold)
        minimum = self._min_samples if min_voiced_samples is None else min_voiced_samples
        if len(trimmed) == 0 or len(trimmed) < minimum:
            return None
        vector = np.asarray(self._infer(fit_to_window(trimmed, self._window_samples)), dtype=np.float32)
        if vector.size == 0:
            return None
        return normalize(vector.reshape(-1))

    def reset(self) -> None:
        """Stateless model; kept for lifecycle symmetry with the VAD."""


class ResemblyzerEmbedder(SpeakerEmbedder):
    """resemblyzer VoiceEncoder; 256-dim embeddings."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        super().__init__(settings)
        self._device = settings.EMBEDDING_DEVICE
        self._encoder = None

    def prepare(self) -> None:
        if self._encoder is not None:
            return
        try:
            from resemblyzer import VoiceEncoder
        except ImportError as err:
            raise ImportError(
                "resemblyzer is required for speaker embeddings. "
                "Install with: pip install resemblyzer"
            ) from err
        logger.info("Loading resemblyzer voice encoder...")
        self._encoder = VoiceEncoder(self._device, verbose=False)
        logger.info("Voice encoder loaded")

    @property
    def is_loaded(self) -> bool:
        return self._encoder is not None

    def _infer(self, wav: np.ndarray) -> np.ndarray:
        return self._encoder.embed_utterance(wav)


def create_speaker_embedder(settings: Settings | None = None) -> SpeakerEmbedder:
    """Unprepared embedder. Safe to share between pipelines: inference is stateless."""
    return ResemblyzerEmbedder(settings)
