"""Tests for the chunk accumulator cut policy and mid-chunk splits."""
import pytest

from segmenter.audio.chunker import (
    CUT_MAX_DURATION,
    CUT_SILENCE,
    ChunkAccumulator,
    split_index,
    trailing_silence_seconds,
)
from tests.conftest import audio_frames


def push_all(accumulator, frames):
    """Push frames, returning (frame index, reason, chunk) for every cut."""
    cuts = []
    for index, frame in enumerate(frames):
        accumulator.push(frame)
        reason = accumulator.cut_reason()
        if reason:
            cuts.append((index, reason, accumulator.take()))
    return cuts


class TestChunkAccumulator:
    def test_silence_before_speech_is_dropped(self, settings):
        acc = ChunkAccumulator(settings)
        frames = audio_frames([False] * 10)
        assert not any(acc.push(f) for f in frames)
        assert not acc.is_open
        assert acc.cut_reason() is None

    def test_cuts_after_silence_cutoff_with_trailing_silence(self, settings):
        acc = ChunkAccumulator(settings)
        # 5s speech, 2s silence @ 50ms frames
        frames = audio_frames([True] * 100 + [False] * 40)
        cuts = push_all(acc, frames)

        assert len(cuts) == 1
        index, reason, chunk = cuts[0]
        assert reason == CUT_SILENCE
        assert index == 123
        assert len(chunk) == 124
        assert chunk[-1].end == pytest.approx(6.2)
        assert not acc.is_open

    def test_short_chunk_waits_for_min_duration(self, settings):
        acc = ChunkAccumulator(settings)
        # 1s speech then silence: cut only once the chunk spans MIN_CHUNK_SECONDS
        frames = audio_frames([True] * 20 + [False] * 60)
        cuts = push_all(acc, frames)

        assert len(cuts) == 1
        _, reason, chunk = cuts[0]
        assert reason == CUT_SILENCE
        assert chunk[-1].end == pytest.approx(3.2)

    def test_max_duration_cut(self, settings):
        acc = ChunkAccumulator(settings)
        cuts = push_all(acc, audio_frames([True] * 300))

        assert [reason for _, reason, _ in cuts] == [CUT_MAX_DURATION]
        assert cuts[0][0] == 239
        assert acc.duration == pytest.approx(3.0)

    def test_turn_taking_flag(self, settings):
        acc = ChunkAccumulator(settings)
        for frame in audio_frames([False] * 12 + [True]):
            acc.push(frame)
        assert acc.opened_after_silence

        acc.reset()
        for frame in audio_frames([False] * 2 + [True]):
            acc.push(frame)
        assert not acc.opened_after_silence

    def test_trailing_silence_carries_into_next_turn_gap(self, settings):
        acc = ChunkAccumulator(settings)
        frames = audio_frames([True] * 70 + [False] * 24 + [True])
        cuts = push_all(acc, frames)
        assert len(cuts) == 1
        # 1.2s of in-chunk silence already counts as a pause before the next chunk
        assert acc.opened_after_silence

    def test_split_at(self, settings):
        acc = ChunkAccumulator(settings)
        for frame in audio_frames([True] * 40 + [False] * 4):
            acc.push(frame)

        leading = acc.split_at(30)
        assert len(leading) == 30
        assert acc.start_time == pytest.approx(1.5)
        assert acc.silence_seconds == pytest.approx(0.2)
        assert not acc.opened_after_silence

    def test_split_at_rejects_out_of_range(self, settings):
        acc = ChunkAccumulator(settings)
        for frame in audio_frames([True] * 4):
            acc.push(frame)
        with pytest.raises(ValueError):
            acc.split_at(0)
        with pytest.raises(ValueError):
            acc.split_at(4)


class TestHelpers:
    def test_split_index(self):
        frames = audio_frames([True] * 10)
        assert split_index(frames, 0.2) == 4
        assert split_index(frames, 0.21) == 5
        assert split_index(frames, 0.0) is None
        assert split_index(frames, 5.0) is None

    def test_trailing_silence(self):
        assert trailing_silence_seconds(audio_frames([True, False, False])) == pytest.approx(0.1)
        assert trailing_silence_seconds(audio_frames([False, True])) == 0.0
