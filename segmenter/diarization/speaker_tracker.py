"""
Speaker registry and matcher for live diarization.

- Assigns labels (Speaker A, Speaker B, ...) consistent within one pipeline run.
- Embedding path: cosine similarity against per-label running embeddings, with
  tiered thresholds and a multi-chunk confirmation gate before minting a new label.
- Fallback path (no embedding model): nearest (amplitude, zcr, rms) signature.
- Label count never exceeds MAX_SPEAKERS_PER_SESSION; both paths share the label sequence.

Limitations (MUST be kept in sync with product behavior):
- Overlapping speech on single-channel input is attributed to one speaker.
- Speaker labels are approximate; no attempt to infer real identities.
- Accuracy depends on mic quality and distance.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from segmenter.audio.models import AudioFrame, concat_samples
from segmenter.config import Settings, get_settings
from segmenter.diarization.models import (
    FallbackSpeakerSignature,
    PendingSpeakerCandidate,
    SpeakerObservation,
    SpeakerProfile,
    cosine_similarity,
    normalize,
    speaker_label,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpeakerMatch:
    label: str
    similarity: float


def signature_for_frames(frames: Sequence[AudioFrame], samples: np.ndarray | None = None) -> FallbackSpeakerSignature:
    """Average amplitude / zcr over the chunk's frames plus RMS over its samples."""
    if not frames:
        return FallbackSpeakerSignature(amplitude=0.0, zero_crossing_rate=0.0, rms_energy=0.0)
    if samples is None:
        samples = concat_samples(frames)
    rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64)))) if len(samples) else 0.0
    return FallbackSpeakerSignature(
        amplitude=float(np.mean([f.amplitude for f in frames])),
        zero_crossing_rate=float(np.mean([f.zero_crossing_rate for f in frames])),
        rms_energy=rms,
    )


class SpeakerRegistry:
    """
    Owned by exactly one pipeline; not thread-safe by itself.
    assign() is the decision ladder for finalized chunks; observe() is the
    read-only classification used by mid-chunk probes.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._confident = settings.SPEAKER_CONFIDENT_SIMILARITY
        self._loose = settings.SPEAKER_LOOSE_SIMILARITY
        self._candidate = settings.SPEAKER_CANDIDATE_SIMILARITY
        self._dramatic = settings.SPEAKER_DRAMATIC_DIFFERENCE
        self._pending_needed = settings.PENDING_CHUNKS_BEFORE_NEW_SPEAKER
        self._min_new_seconds = settings.MIN_NEW_SPEAKER_SECONDS
        self._max_speakers = settings.MAX_SPEAKERS_PER_SESSION
        self._fallback_distance = settings.FALLBACK_SIGNATURE_DISTANCE

        self._labels: list[str] = []
        self._profiles: dict[str, SpeakerProfile] = {}
        self._signatures: dict[str, FallbackSpeakerSignature] = {}
        self._pending: PendingSpeakerCandidate | None = None

    @property
    def labels(self) -> list[str]:
        return list(self._labels)

    @property
    def speaker_count(self) -> int:
        return len(self._labels)

    @property
    def at_capacity(self) -> bool:
        return len(self._labels) >= self._max_speakers

    @property
    def pending(self) -> PendingSpeakerCandidate | None:
        return self._pending

    def profile(self, label: str | None) -> SpeakerProfile | None:
        if label is None:
            return None
        return self._profiles.get(label)

    def observation_count(self, label: str | None) -> int:
        profile = self.profile(label)
        return profile.observation_count if profile else 0

    def closest(self, embedding: np.ndarray) -> SpeakerMatch | None:
        """Most similar profile; ties keep the earlier label."""
        best: SpeakerMatch | None = None
        for label, profile in self._profiles.items():
            similarity = cosine_similarity(embedding, profile.embedding)
            if best is None or similarity > best.similarity:
                best = SpeakerMatch(label, similarity)
        return best

    def assign(self, embedding: np.ndarray, duration: float) -> str:
        """Attribute one finalized chunk (duration in seconds) to a label."""
        match = self.closest(embedding)
        if match is None:
            if self.at_capacity:
                # Fallback signatures already used every label
                return self._labels[-1]
            self._pending = None
            return self._mint(embedding)

        if match.similarity >= self._confident or match.similarity >= self._loose:
            self._pending = None
            self._profiles[match.label].update(embedding)
            return match.label

        if self.at_capacity:
            self._pending = None
            self._profiles[match.label].update(embedding)
            return match.label

        if match.similarity < self._dramatic:
            if duration < self._min_new_seconds:
                # Short blips never spawn speakers
                return match.label
            self._pending = None
            logger.debug("Dramatically different voice (sim=%.2f); new speaker", match.similarity)
            return self._mint(embedding)

        # Ambiguous band: require corroborating chunks
        if self._pending is not None and cosine_similarity(self._pending.embedding, embedding) >= self._candidate:
            self._pending.absorb(embedding)
        else:
            self._pending = PendingSpeakerCandidate(embedding=normalize(embedding), chunk_count=1)

        if self._pending.chunk_count >= self._pending_needed:
            if duration >= self._min_new_seconds:
                self._pending = None
                logger.debug("Pending speaker confirmed after %d chunks", self._pending_needed)
                return self._mint(embedding)
            return match.label

        # Keep continuity while candidate is warming up.
        self._profiles[match.label].update(embedding)
        return match.label

    def observe(self, embedding: np.ndarray, threshold: float) -> SpeakerObservation:
        """Classify a probe window without touching any profile."""
        match = self.closest(embedding)
        if match is not None and match.similarity >= threshold:
            return SpeakerObservation(label=match.label, embedding=embedding)
        return SpeakerObservation(label=None, embedding=embedding)

    def assign_fallback(self, signature: FallbackSpeakerSignature) -> str:
        """Nearest signature within FALLBACK_SIGNATURE_DISTANCE (or any, at capacity); else a new label."""
        nearest: tuple[str, float] | None = None
        for label, reference in self._signatures.items():
            distance = reference.distance(signature)
            if nearest is None or distance < nearest[1]:
                nearest = (label, distance)

        if nearest is not None and (nearest[1] <= self._fallback_distance or self.at_capacity):
            return nearest[0]
        if self.at_capacity:
            return self._labels[-1]

        label = self._next_label()
        self._signatures[label] = signature
        logger.debug("New fallback speaker %s", label)
        return label

    def reset(self) -> None:
        self._labels.clear()
        self._profiles.clear()
        self._signatures.clear()
        self._pending = None

    def _next_label(self) -> str:
        label = speaker_label(len(self._labels))
        self._labels.append(label)
        return label

    def _mint(self, embedding: np.ndarray) -> str:
        label = self._next_label()
        self._profiles[label] = SpeakerProfile(label=label, embedding=normalize(embedding))
        logger.debug("New speaker %s (%d total)", label, len(self._labels))
        return label
