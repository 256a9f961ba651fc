"""
Live speaker attribution (diarization only).

- No audio separation; no multi-channel input.
- Assigns speaker labels (Speaker A, Speaker B, ...) consistent within one pipeline run.
- Splits chunks mid-utterance when the voice changes (probe and interrupt paths).

Limitations (see speaker_tracker.py):
- Overlapping speech on single-channel input is attributed to one speaker.
- Speaker labels are approximate; no real identity inference.
- Accuracy depends on mic quality and distance.
"""
from __future__ import annotations

from segmenter.diarization.boundary import MidChunkBoundaryDetector
from segmenter.diarization.embedding import EmbeddingUnavailableError, SpeakerEmbedder, create_speaker_embedder
from segmenter.diarization.models import SpeakerObservation, SpeakerProfile
from segmenter.diarization.speaker_tracker import SpeakerRegistry

__all__ = [
    "MidChunkBoundaryDetector",
    "EmbeddingUnavailableError",
    "SpeakerEmbedder",
    "create_speaker_embedder",
    "SpeakerObservation",
    "SpeakerProfile",
    "SpeakerRegistry",
]
