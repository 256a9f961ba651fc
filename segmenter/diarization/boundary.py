"""
Mid-chunk speaker boundary detection.

Cuts a chunk early when the speaker changes inside it instead of waiting for a pause.

Probe path: every PROBE_INTERVAL_SPEECH_SECONDS of new speech, the trailing window
of the open chunk holding PROBE_WINDOW_SPEECH_SECONDS of speech (shorter once the
tracked speaker is reliable) is embedded and classified against the registry with a
relaxed threshold. A disagreement with the tracked speaker becomes a change candidate;
once stable for SPEAKER_CHANGE_CUTOFF_SECONDS the chunk is split at
first_observed - BOUNDARY_BACKTRACK_SECONDS (never before the chunk start). A split point
that would leave less than MIN_SPLIT_LEADING_SECONDS in front moves forward to the first
frame that leaves enough; while the chunk is still too short the split waits for a
later probe.

Interrupt path: a rolling window of INTERRUPT_WINDOW_SAMPLES speech samples is compared
with the tracked (or last known) speaker's reference embedding; the caller races it
against a deadline and splits at the last frame when it fires.

This class only holds counters and makes decisions; the orchestrator runs the model.
"""
from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from segmenter.audio.chunker import split_index
from segmenter.audio.models import AudioFrame
from segmenter.audio.rolling_buffer import RollingBuffer
from segmenter.config import Settings, get_settings
from segmenter.diarization.models import (
    SpeakerChangeCandidate,
    SpeakerObservation,
    cosine_similarity,
)
from segmenter.diarization.speaker_tracker import SpeakerRegistry

logger = logging.getLogger(__name__)


class MidChunkBoundaryDetector:
    """Per-run state: probe cadence, tracked speaker, pending change, interrupt window."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._probe_interval = settings.PROBE_INTERVAL_SPEECH_SECONDS
        self._window_speech = settings.PROBE_WINDOW_SPEECH_SECONDS
        self._short_window_speech = settings.PROBE_SHORT_WINDOW_SPEECH_SECONDS
        self._reliable_observations = settings.PROBE_RELIABLE_OBSERVATIONS
        self._turn_taking_similarity = settings.PROBE_TURN_TAKING_SIMILARITY
        self._default_similarity = settings.SPEAKER_LOOSE_SIMILARITY
        self._change_cutoff = settings.SPEAKER_CHANGE_CUTOFF_SECONDS
        self._backtrack = settings.BOUNDARY_BACKTRACK_SECONDS
        self._min_leading = settings.MIN_SPLIT_LEADING_SECONDS
        self._interrupt_similarity = settings.INTERRUPT_SIMILARITY

        self._interrupt_buffer = RollingBuffer(settings)
        self._speech_since_probe: float = 0.0
        self._tracked: SpeakerObservation | None = None
        self._change: SpeakerChangeCandidate | None = None

    @property
    def tracked(self) -> SpeakerObservation | None:
        return self._tracked

    @property
    def change_candidate(self) -> SpeakerChangeCandidate | None:
        return self._change

    @property
    def speech_since_probe(self) -> float:
        return self._speech_since_probe

    def similarity_threshold(self, opened_after_silence: bool) -> float:
        """Relaxed after a pause (turn-taking), loose-match threshold otherwise."""
        return self._turn_taking_similarity if opened_after_silence else self._default_similarity

    def on_speech(self, frame: AudioFrame) -> np.ndarray | None:
        """Count speech toward the next probe; returns an interrupt window when one fills."""
        self._speech_since_probe += frame.duration
        return self._interrupt_buffer.push(frame.samples)

    def probe_due(self) -> bool:
        return self._speech_since_probe >= self._probe_interval - 1e-9

    def mark_probed(self) -> None:
        self._speech_since_probe = 0.0

    def probe_window(
        self,
        frames: Sequence[AudioFrame],
        registry: SpeakerRegistry,
        last_label: str | None,
    ) -> list[AudioFrame] | None:
        """Trailing frames holding enough speech for one probe, or None if the chunk has too little."""
        label = self._tracked.label if self._tracked is not None else last_label
        reliable = registry.observation_count(label) >= self._reliable_observations
        needed = self._short_window_speech if reliable else self._window_speech

        speech = 0.0
        for index in range(len(frames) - 1, -1, -1):
            if frames[index].is_speech:
                speech += frames[index].duration
            if speech >= needed - 1e-9:
                return list(frames[index:])
        return None

    def agrees(self, lhs: SpeakerObservation, rhs: SpeakerObservation, threshold: float) -> bool:
        if lhs.label is not None or rhs.label is not None:
            return lhs.label == rhs.label
        return cosine_similarity(lhs.embedding, rhs.embedding) >= threshold

    def evaluate(
        self,
        observation: SpeakerObservation,
        now: float,
        chunk_start: float,
        threshold: float,
    ) -> float | None:
        """
        Feed one probe observation taken at time `now`.
        Returns the proposed (backdated) split time once a change is confirmed, else None.
        """
        if self._tracked is None:
            self._tracked = observation
            self._change = None
            return None
        if self.agrees(observation, self._tracked, threshold):
            self._change = None
            return None

        if self._change is None or not self.agrees(observation, self._change.observation, threshold):
            self._change = SpeakerChangeCandidate(observation=observation, first_observed=now)
            logger.debug("Speaker change candidate at %.2fs (%s)", now, observation.label or "new voice")
        if now - self._change.first_observed < self._change_cutoff:
            return None
        return max(chunk_start, self._change.first_observed - self._backtrack)

    def plan_split(self, frames: Sequence[AudioFrame], split_time: float) -> int | None:
        """
        Frame index for a split at split_time. If the leading part would be shorter than
        MIN_SPLIT_LEADING_SECONDS the index moves forward until it is long enough.
        None when no frame boundary leaves that much in front and something behind.
        """
        if not frames:
            return None
        return split_index(frames, max(split_time, frames[0].timestamp + self._min_leading))

    def interrupt_reference(self, registry: SpeakerRegistry, last_label: str | None) -> np.ndarray | None:
        """Reference embedding of the tracked speaker, else of the last known speaker."""
        if self._tracked is not None:
            if self._tracked.label is None:
                return self._tracked.embedding
            profile = registry.profile(self._tracked.label)
            if profile is not None:
                return profile.embedding
        profile = registry.profile(last_label)
        return profile.embedding if profile is not None else None

    def is_interrupt(self, embedding: np.ndarray, reference: np.ndarray) -> bool:
        return cosine_similarity(embedding, reference) < self._interrupt_similarity

    def adopt(self, observation: SpeakerObservation) -> None:
        """Track observation if nothing is tracked yet (chunk began with a voice other than the last one)."""
        if self._tracked is None:
            self._tracked = observation
            self._change = None

    def accept_split(self, observation: SpeakerObservation | None) -> None:
        """After a split the new speaker is tracked for the trailing chunk."""
        self._tracked = observation
        self._change = None
        self._speech_since_probe = 0.0
        self._interrupt_buffer.clear()

    def start_chunk(self) -> None:
        """A chunk was finalized by the cut policy; the next one starts untracked."""
        self._tracked = None
        self._change = None
        self._speech_since_probe = 0.0
        self._interrupt_buffer.clear()

    def reset(self) -> None:
        self.start_chunk()
