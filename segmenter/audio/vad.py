"""
Voice activity classification on captured audio.

Two modes over the same model:
- ingest_streaming(): stateful; buffers audio, runs fixed windows every hop and
  returns the newest window's speech probability (None until a full window exists).
- ingest_batch(): one-shot second pass over a whole buffer; resets state first and
  returns every (sample_index, probability) observation.

Backends: Silero VAD (torch, probability model) and webrtcvad (binary per 30ms frame).
Model libraries are imported in prepare() so the pipeline can run on the amplitude
fallback when they are missing.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import numpy as np

from segmenter.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Both backends run at 16 kHz
MODEL_SAMPLE_RATE = 16000
# Streaming buffer cap (samples @ 16kHz)
MAX_BUFFERED_SAMPLES = 24000


class VADUnavailableError(RuntimeError):
    """Inference requested before the model was prepared."""


def resample_to_16k(samples: np.ndarray, sample_rate: float) -> np.ndarray:
    """Linear-interpolation resample to 16 kHz. Empty input or bad rate gives an empty array."""
    samples = np.asarray(samples, dtype=np.float32)
    if len(samples) == 0 or sample_rate <= 0:
        return np.zeros(0, dtype=np.float32)
    if abs(sample_rate - MODEL_SAMPLE_RATE) < 0.5:
        return samples
    ratio = MODEL_SAMPLE_RATE / sample_rate
    out_count = max(int(len(samples) * ratio), 1)
    positions = np.arange(out_count, dtype=np.float64) / ratio
    return np.interp(positions, np.arange(len(samples)), samples).astype(np.float32)


class VoiceActivityClassifier(ABC):
    """
    Base adapter. Subclasses define window/hop sizes (16 kHz samples),
    model loading, one-window prediction and recurrent-state reset.
    """

    window_samples: int = 512
    hop_samples: int = 512

    def __init__(self) -> None:
        self._buffer = np.zeros(0, dtype=np.float32)

    @abstractmethod
    def prepare(self) -> None:
        """Load the model (blocking; run in executor). Idempotent."""
        ...

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        ...

    @abstractmethod
    def _predict(self, window: np.ndarray) -> float:
        """Speech probability for exactly window_samples samples."""
        ...

    @abstractmethod
    def _reset_state(self) -> None:
        ...

    def reset(self) -> None:
        """Clear buffered audio and recurrent state."""
        self._buffer = np.zeros(0, dtype=np.float32)
        if self.is_loaded:
            self._reset_state()

    def ingest_streaming(self, samples: np.ndarray, sample_rate: float) -> float | None:
        if not self.is_loaded:
            raise VADUnavailableError("VAD model not prepared")
        converted = resample_to_16k(samples, sample_rate)
        if len(converted) == 0:
            return None

        self._buffer = np.concatenate([self._buffer, converted])
        latest: float | None = None
        while len(self._buffer) >= self.window_samples:
            latest = self._predict(self._buffer[: self.window_samples])
            self._buffer = self._buffer[min(self.hop_samples, len(self._buffer)) :]

        if len(self._buffer) > MAX_BUFFERED_SAMPLES:
            self._buffer = self._buffer[-MAX_BUFFERED_SAMPLES:]
        return latest

    def ingest_batch(
        self,
        samples: np.ndarray,
        sample_rate: float,
        hop_size: int | None = None,
    ) -> list[tuple[int, float]]:
        """
        hop_size: hop in input samples (defaults to the model hop).
        Returned sample indexes are in the input sample rate.
        """
        if not self.is_loaded:
            raise VADUnavailableError("VAD model not prepared")
        self.reset()
        converted = resample_to_16k(samples, sample_rate)
        if len(converted) == 0:
            return []

        scale = MODEL_SAMPLE_RATE / sample_rate
        hop = self.hop_samples if hop_size is None else max(int(round(hop_size * scale)), 1)
        observations: list[tuple[int, float]] = []
        start = 0
        while start < len(converted):
            window = converted[start : start + self.window_samples]
            if len(window) < self.window_samples:
                window = np.pad(window, (0, self.window_samples - len(window)))
            probability = self._predict(window)
            observations.append((int(round(start / scale)), probability))
            start += hop
        self.reset()
        return observations


class SileroVADClassifier(VoiceActivityClassifier):
    """Silero VAD (JIT, torch). 512-sample windows @ 16 kHz; LSTM state kept inside the model."""

    window_samples = 512
    hop_samples = 512

    def __init__(self) -> None:
        super().__init__()
        self._model = None

    def prepare(self) -> None:
        if self._model is not None:
            self.reset()
            return
        try:
            from silero_vad import load_silero_vad
        except ImportError as err:
            raise ImportError(
                "silero-vad is required for VAD_BACKEND=silero. "
                "Install with: pip install silero-vad"
            ) from err
        self._model = load_silero_vad()
        self.reset()
        logger.info("Silero VAD loaded")

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def _predict(self, window: np.ndarray) -> float:
        import torch

        with torch.no_grad():
            return float(self._model(torch.from_numpy(np.ascontiguousarray(window)), MODEL_SAMPLE_RATE).item())

    def _reset_state(self) -> None:
        self._model.reset_states()


class WebRTCVADClassifier(VoiceActivityClassifier):
    """
    webrtcvad over 30ms frames (480 samples @ 16 kHz PCM16).
    Binary verdict mapped to probability 1.0 / 0.0; no recurrent state.
    """

    window_samples = 480
    hop_samples = 480

    def __init__(self, aggressiveness: int = 2) -> None:
        """aggressiveness: 0 (least aggressive) to 3 (most aggressive)."""
        super().__init__()
        self._aggressiveness = aggressiveness
        self._vad = None

    def prepare(self) -> None:
        if self._vad is not None:
            self.reset()
            return
        try:
            import webrtcvad
        except ImportError as err:
            raise ImportError(
                "webrtcvad is required for VAD_BACKEND=webrtc. "
                "Install with: pip install webrtcvad-wheels"
            ) from err
        self._vad = webrtcvad.Vad(self._aggressiveness)
        logger.info("WebRTC VAD ready (aggressiveness=%d)", self._aggressiveness)

    @property
    def is_loaded(self) -> bool:
        return self._vad is not None

    def _predict(self, window: np.ndarray) -> float:
        pcm = (window * 32767).clip(-32768, 32767).astype(np.int16).tobytes()
        return 1.0 if self._vad.is_speech(pcm, MODEL_SAMPLE_RATE) else 0.0

    def _reset_state(self) -> None:
        pass


def create_vad_classifier(settings: Settings | None = None) -> VoiceActivityClassifier:
    """New (unprepared) classifier for VAD_BACKEND. Each pipeline needs its own: state is per stream."""
    settings = settings or get_settings()
    if settings.VAD_BACKEND == "webrtc":
        return WebRTCVADClassifier(aggressiveness=settings.VAD_WEBRTC_AGGRESSIVENESS)
    return SileroVADClassifier()
