"""
Speaker identity structures for live attribution.

- SpeakerProfile: stable label ("Speaker A", ...) with a unit-normalized running
  embedding; observation_count weights incremental averaging. Never deleted in a session.
- PendingSpeakerCandidate: provisional average that must be corroborated by several
  chunks before a new profile is minted.
- SpeakerObservation: what a mid-chunk probe saw (an existing label, or an unregistered voice).
- SpeakerChangeCandidate: observation + when it was first seen (hysteresis).
- FallbackSpeakerSignature: (amplitude, zcr, rms) used when embeddings are unavailable.

Limitations:
- Labels are session-local; no real identity inference.
- Overlapping speech on a single channel is attributed to one speaker.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

# Speaker label prefix; indices map to Speaker A, Speaker B, ...
SPEAKER_PREFIX = "Speaker "


def speaker_label(index: int) -> str:
    """Stable label for speaker index: Speaker A, Speaker B, ... (Z after 25)."""
    return f"{SPEAKER_PREFIX}{chr(65 + min(max(index, 0), 25))}"


def normalize(vector: np.ndarray) -> np.ndarray:
    """Unit length; zero vectors are returned unchanged."""
    vector = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(vector))
    if norm <= 0.0:
        return vector
    return vector / norm


def cosine_similarity(lhs: np.ndarray, rhs: np.ndarray) -> float:
    """Cosine over the common prefix; -1 when either side is empty or zero."""
    length = min(len(lhs), len(rhs))
    if length == 0:
        return -1.0
    a = np.asarray(lhs[:length], dtype=np.float64)
    b = np.asarray(rhs[:length], dtype=np.float64)
    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if na <= 0.0 or nb <= 0.0:
        return -1.0
    return float(np.dot(a, b) / (na * nb))


@dataclass
class SpeakerProfile:
    label: str
    embedding: np.ndarray
    observation_count: int = 1

    def update(self, embedding: np.ndarray) -> None:
        """Per-dimension average weighted by prior observation count, then re-normalize."""
        length = min(len(self.embedding), len(embedding))
        merged = np.array(self.embedding, dtype=np.float32, copy=True)
        new_count = self.observation_count + 1
        merged[:length] = (merged[:length] * self.observation_count + np.asarray(embedding[:length])) / new_count
        self.embedding = normalize(merged)
        self.observation_count = new_count


@dataclass
class PendingSpeakerCandidate:
    embedding: np.ndarray
    chunk_count: int = 1

    def absorb(self, embedding: np.ndarray) -> None:
        """Incremental moving average weighted 1 / (chunk_count + 1)."""
        weight = 1.0 / (self.chunk_count + 1)
        self.embedding = normalize(self.embedding + (np.asarray(embedding) - self.embedding) * weight)
        self.chunk_count += 1


@dataclass(frozen=True)
class SpeakerObservation:
    """label=None means the voice matched no registered profile."""

    label: str | None
    embedding: np.ndarray

    @property
    def is_new_candidate(self) -> bool:
        return self.label is None


@dataclass(frozen=True)
class SpeakerChangeCandidate:
    observation: SpeakerObservation
    first_observed: float


@dataclass(frozen=True)
class FallbackSpeakerSignature:
    amplitude: float
    zero_crossing_rate: float
    rms_energy: float

    def distance(self, other: "FallbackSpeakerSignature") -> float:
        """Weighted L1: 0.45 amplitude, 0.35 zcr, 0.20 rms."""
        return (
            0.45 * abs(self.amplitude - other.amplitude)
            + 0.35 * abs(self.zero_crossing_rate - other.zero_crossing_rate)
            + 0.20 * abs(self.rms_energy - other.rms_energy)
        )
