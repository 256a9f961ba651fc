"""
SubChunkSplitter: second pass over a finalized chunk to find breath pauses.

The VAD runs in batch mode over the chunk's raw samples (~32ms hop). Runs of
observations with probability < SUBSPLIT_SILENCE_PROBABILITY form silence spans;
each span >= SUBSPLIT_MIN_PAUSE_SECONDS proposes a split at its midpoint. A split
is accepted only if both resulting pieces are >= SUBSPLIT_MIN_PIECE_SECONDS.
Each piece is mapped proportionally back onto the chunk's wall-clock span.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from segmenter.audio.vad import VoiceActivityClassifier
from segmenter.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubChunk:
    """One breath-pause-delimited slice of a finalized chunk (the unit handed to transcription)."""

    start_sample: int
    end_sample: int
    start_offset: float
    end_offset: float
    samples: np.ndarray

    @property
    def duration(self) -> float:
        return self.end_offset - self.start_offset


class SubChunkSplitter:
    """Stateless per call; the classifier passed in is reset by batch inference."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._hop_seconds = settings.SUBSPLIT_HOP_SECONDS
        self._silence_probability = settings.SUBSPLIT_SILENCE_PROBABILITY
        self._min_pause = settings.SUBSPLIT_MIN_PAUSE_SECONDS
        self._min_piece = settings.SUBSPLIT_MIN_PIECE_SECONDS

    def silence_spans(
        self,
        observations: Sequence[tuple[int, float]],
        total_samples: int,
        hop_samples: int,
    ) -> list[tuple[int, int]]:
        """Contiguous (start, end) sample ranges whose probability stays below the silence threshold."""
        spans: list[tuple[int, int]] = []
        span_start: int | None = None
        span_end = 0
        for index, probability in observations:
            if probability < self._silence_probability:
                if span_start is None:
                    span_start = index
                span_end = min(index + hop_samples, total_samples)
            elif span_start is not None:
                spans.append((span_start, span_end))
                span_start = None
        if span_start is not None:
            spans.append((span_start, span_end))
        return spans

    def split_points(
        self,
        observations: Sequence[tuple[int, float]],
        total_samples: int,
        sample_rate: float,
        hop_samples: int,
    ) -> list[int]:
        """Accepted split sample indexes, ascending."""
        accepted: list[int] = []
        previous = 0
        for start, end in self.silence_spans(observations, total_samples, hop_samples):
            if (end - start) / sample_rate < self._min_pause:
                continue
            midpoint = (start + end) // 2
            if (midpoint - previous) / sample_rate < self._min_piece:
                continue
            if (total_samples - midpoint) / sample_rate < self._min_piece:
                continue
            accepted.append(midpoint)
            previous = midpoint
        return accepted

    def split(
        self,
        samples: np.ndarray,
        sample_rate: float,
        start_offset: float,
        end_offset: float,
        classifier: VoiceActivityClassifier | None,
    ) -> list[SubChunk]:
        """
        Split one chunk. classifier=None (still loading / fallback) returns the full range.
        Inference errors propagate to the caller.
        """
        samples = np.asarray(samples, dtype=np.float32)
        total = len(samples)
        if total == 0 or sample_rate <= 0:
            return []

        points: list[int] = []
        if classifier is not None:
            hop_samples = max(int(round(self._hop_seconds * sample_rate)), 1)
            observations = classifier.ingest_batch(samples, sample_rate, hop_samples)
            points = self.split_points(observations, total, sample_rate, hop_samples)

        bounds = [0, *points, total]
        span = end_offset - start_offset
        pieces: list[SubChunk] = []
        for a, b in zip(bounds[:-1], bounds[1:]):
            pieces.append(
                SubChunk(
                    start_sample=a,
                    end_sample=b,
                    start_offset=start_offset + span * (a / total),
                    end_offset=start_offset + span * (b / total),
                    samples=samples[a:b],
                )
            )
        if len(pieces) > 1:
            logger.debug("Sub-split chunk %.2f-%.2fs into %d pieces", start_offset, end_offset, len(pieces))
        return pieces
