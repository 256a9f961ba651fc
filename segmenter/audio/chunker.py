"""
ChunkAccumulator: holds the in-progress utterance and decides when to cut it.

Logic:
1. A speech frame opens a chunk (if none is open) and resets the silence counter.
   For the opening frame we remember whether >= TURN_TAKING_SILENCE_SECONDS of
   silence preceded it (relaxes mid-chunk speaker matching).
2. A non-speech frame is appended only while a chunk is open (keeps natural pause
   timing for playback) and grows the silence counter; otherwise it is dropped.
3. After each frame the caller asks cut_reason():
   - "silence": silence >= SILENCE_CUTOFF_SECONDS and chunk >= MIN_CHUNK_SECONDS
   - "max_duration": chunk >= MAX_CHUNK_SECONDS
4. split_at() implements a mid-chunk speaker split: leading frames are returned,
   trailing frames stay as the new open chunk.
"""
from __future__ import annotations

import logging
from typing import Sequence

from segmenter.audio.models import AudioFrame, chunk_duration
from segmenter.config import Settings, get_settings

logger = logging.getLogger(__name__)

CUT_SILENCE = "silence"
CUT_MAX_DURATION = "max_duration"

# Frame timestamps are accumulated floats
_EPSILON = 1e-6


def split_index(frames: Sequence[AudioFrame], timestamp: float) -> int | None:
    """Index of the first frame starting at or after timestamp, if it leaves both sides non-empty."""
    for index, frame in enumerate(frames):
        if frame.timestamp >= timestamp - 1e-9:
            if 0 < index < len(frames):
                return index
            return None
    return None


def trailing_silence_seconds(frames: Sequence[AudioFrame]) -> float:
    total = 0.0
    for frame in reversed(frames):
        if frame.is_speech:
            break
        total += frame.duration
    return total


class ChunkAccumulator:
    """At most one open chunk. Frames are time-ordered and contiguous."""

    def __init__(
        self,
        settings: Settings | None = None,
        silence_cutoff_sec: float | None = None,
        min_chunk_sec: float | None = None,
        max_chunk_sec: float | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._silence_cutoff = (
            silence_cutoff_sec if silence_cutoff_sec is not None else settings.SILENCE_CUTOFF_SECONDS
        )
        self._min_chunk = min_chunk_sec if min_chunk_sec is not None else settings.MIN_CHUNK_SECONDS
        self._max_chunk = max_chunk_sec if max_chunk_sec is not None else settings.MAX_CHUNK_SECONDS
        self._turn_taking_silence = settings.TURN_TAKING_SILENCE_SECONDS

        self._frames: list[AudioFrame] = []
        # Trailing silence inside the open chunk
        self._silence_seconds: float = 0.0
        # Silence seen while no chunk was open (carried over from the last cut)
        self._idle_silence_seconds: float = 0.0
        self._opened_after_silence: bool = False

    @property
    def frames(self) -> tuple[AudioFrame, ...]:
        return tuple(self._frames)

    @property
    def is_open(self) -> bool:
        return bool(self._frames)

    @property
    def duration(self) -> float:
        return chunk_duration(self._frames)

    @property
    def silence_seconds(self) -> float:
        return self._silence_seconds

    @property
    def opened_after_silence(self) -> bool:
        return self._opened_after_silence

    @property
    def start_time(self) -> float | None:
        return self._frames[0].timestamp if self._frames else None

    def push(self, frame: AudioFrame) -> bool:
        """Push one classified frame. Returns True if it became part of the open chunk."""
        if frame.is_speech:
            if not self._frames:
                self._opened_after_silence = self._idle_silence_seconds >= self._turn_taking_silence
                self._idle_silence_seconds = 0.0
            self._frames.append(frame)
            self._silence_seconds = 0.0
            return True
        if self._frames:
            self._frames.append(frame)
            self._silence_seconds += frame.duration
            return True
        self._idle_silence_seconds += frame.duration
        return False

    def cut_reason(self) -> str | None:
        if not self._frames:
            return None
        duration = self.duration
        if self._silence_seconds >= self._silence_cutoff - _EPSILON and duration >= self._min_chunk - _EPSILON:
            return CUT_SILENCE
        if duration >= self._max_chunk - _EPSILON:
            return CUT_MAX_DURATION
        return None

    def take(self) -> list[AudioFrame]:
        """Finalize: return all frames and clear. Trailing silence counts toward the next turn gap."""
        chunk = self._frames
        self._frames = []
        self._idle_silence_seconds = self._silence_seconds
        self._silence_seconds = 0.0
        self._opened_after_silence = False
        return chunk

    def split_at(self, index: int) -> list[AudioFrame]:
        """
        Mid-chunk split: frames[:index] are returned (leading), frames[index:] stay open.
        Trailing chunk recomputes its silence counter; it did not open after a pause.
        """
        if not 0 < index < len(self._frames):
            raise ValueError(f"split index {index} out of range for {len(self._frames)} frames")
        leading = self._frames[:index]
        self._frames = self._frames[index:]
        self._silence_seconds = trailing_silence_seconds(self._frames)
        self._opened_after_silence = False
        return leading

    def reset(self) -> None:
        self._frames = []
        self._silence_seconds = 0.0
        self._idle_silence_seconds = 0.0
        self._opened_after_silence = False
