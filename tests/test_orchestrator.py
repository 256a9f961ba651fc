"""
End-to-end tests for LiveSessionPipeline with deterministic fakes.

Frames are 50ms; voice A is audio at level 0.3, voice B at level 0.5.
"""
import asyncio
import threading
import time

import numpy as np
import pytest

from segmenter.audio.models import CapturedFrame
from segmenter.config import Settings
from segmenter.pipeline.events import (
    PipelineConfig,
    SegmentEvent,
    SpeakerEvent,
    StoppedEvent,
    TimerEvent,
    WaveformEvent,
)
from segmenter.pipeline.lifecycle import DetectorState
from segmenter.pipeline.orchestrator import LiveSessionPipeline, ModelWorker
from tests.conftest import (
    VOICE_A,
    VOICE_B,
    EnergyVAD,
    VoiceKeyEmbedder,
    captured,
    timeline,
)


def tuned(**overrides) -> Settings:
    return Settings(**{"_env_file": None, "EVENT_BUFFER_SIZE": 100_000, **overrides})


@pytest.fixture
def build(settings):
    created = []

    def _build(custom_settings=None, vad=None, batch_vad=None, embedder=None):
        s = custom_settings or settings
        pipeline = LiveSessionPipeline(
            s,
            vad=vad or EnergyVAD(),
            batch_vad=batch_vad or EnergyVAD(),
            embedder=embedder or VoiceKeyEmbedder(s),
        )
        created.append(pipeline)
        return pipeline

    yield _build
    for pipeline in created:
        pipeline.close()


def fallback_models(settings):
    return {
        "vad": EnergyVAD(fail_prepare=True),
        "batch_vad": EnergyVAD(fail_prepare=True),
        "embedder": VoiceKeyEmbedder(settings, fail_prepare=True),
    }


async def start(pipeline, session_id="s1"):
    events = await pipeline.start(PipelineConfig(session_id=session_id))
    await pipeline.wait_for_warmup()
    return events


async def feed(pipeline, frames):
    for frame in frames:
        pipeline.submit(frame)
    await pipeline.drain()


async def finish(pipeline, events):
    await pipeline.stop()
    return [event async for event in events]


def spans(events):
    return [
        (round(e.segment.start_offset, 2), round(e.segment.end_offset, 2), e.segment.speaker_label)
        for e in events
        if isinstance(e, SegmentEvent)
    ]


def speaker_changes(events):
    return [e.label for e in events if isinstance(e, SpeakerEvent)]


class TestChunking:
    async def test_silence_cut_under_fallback(self, build, settings):
        pipeline = build(**fallback_models(settings))
        events = await start(pipeline)
        assert pipeline.vad_state is DetectorState.FALLBACK
        assert pipeline.speaker_state is DetectorState.FALLBACK

        for frame in timeline((0.5, 5.0), (0.0, 2.0), (0.5, 5.0)):
            await pipeline.ingest(frame)
        # first chunk is out before stop; second is still open
        assert pipeline.speaker_count == 1
        assert pipeline.live_speaker == "Speaker A"

        received = await finish(pipeline, events)
        segments = spans(received)
        assert len(segments) == 2
        assert segments[0] == (0.0, 6.2, "Speaker A")
        assert segments[1][:2] == (7.0, 12.0)
        assert isinstance(received[-1], StoppedEvent)

    async def test_breath_pause_sub_split(self, build):
        pipeline = build()
        events = await start(pipeline)
        assert pipeline.vad_state is DetectorState.READY

        await feed(pipeline, timeline((VOICE_A, 2.0), (0.0, 0.5), (VOICE_A, 2.0), (0.0, 1.5)))
        received = await finish(pipeline, events)

        segment_events = [e for e in received if isinstance(e, SegmentEvent)]
        assert len(segment_events) == 2
        first, second = (e.segment for e in segment_events)
        assert first.start_offset == pytest.approx(0.0)
        assert first.end_offset == pytest.approx(2.25, abs=0.05)
        assert second.start_offset == first.end_offset
        assert second.end_offset == pytest.approx(5.7)
        assert all(e.chunk_seconds == pytest.approx(5.7) for e in segment_events)
        assert first.speaker_label == second.speaker_label == "Speaker A"
        assert first.text == "Queued for automatic transcription..."
        assert first.language_id == "AUTO"
        assert len(first.samples) + len(second.samples) == int(5.7 * 16000)

    async def test_per_frame_events(self, build, settings):
        pipeline = build()
        events = await start(pipeline)
        await feed(pipeline, timeline((VOICE_A, 0.5)))
        received = await finish(pipeline, events)

        waveforms = [e for e in received if isinstance(e, WaveformEvent)]
        timers = [e for e in received if isinstance(e, TimerEvent)]
        assert len(waveforms) == len(timers) == 10
        assert all(len(w.levels) == settings.WAVEFORM_BARS for w in waveforms)
        assert waveforms[0].levels[-1] == VOICE_A
        assert waveforms[0].levels[0] == settings.WAVEFORM_FLOOR
        assert timers[-1].elapsed == pytest.approx(0.5)

    async def test_malformed_frames_are_skipped(self, build):
        pipeline = build()
        events = await start(pipeline)
        empty = CapturedFrame(np.zeros(0, dtype=np.float32), 16000.0, 0.0, 0.0, 0.0)
        no_rate = CapturedFrame(np.zeros(10, dtype=np.float32), 0.0, 0.0, 0.0, 0.0)
        await feed(pipeline, [empty, no_rate, captured(VOICE_A)])
        received = await finish(pipeline, events)

        timers = [e.elapsed for e in received if isinstance(e, TimerEvent)]
        assert timers == [pytest.approx(0.05)]
        assert pipeline.is_running is False


class TestSpeakerBoundaries:
    async def test_probe_split_is_backdated(self, build):
        # Interrupt path disabled: only periodic probes may split
        pipeline = build(tuned(INTERRUPT_WINDOW_SAMPLES=10**9))
        events = await start(pipeline)
        assert pipeline.speaker_state is DetectorState.READY

        await feed(pipeline, timeline((VOICE_A, 4.0), (VOICE_B, 4.0), (VOICE_A, 4.0)))
        received = await finish(pipeline, events)

        assert spans(received) == [
            (0.0, 4.0, "Speaker A"),
            (4.0, 8.0, "Speaker B"),
            (8.0, 12.0, "Speaker A"),
        ]
        assert speaker_changes(received) == ["Speaker A", "Speaker B", "Speaker A", None]

    async def test_early_change_splits_once_leading_part_is_long_enough(self, build):
        # Change seen 2.25s in: the backdated point (1.25s) would leave too little in front
        pipeline = build(tuned(INTERRUPT_WINDOW_SAMPLES=10**9))
        events = await start(pipeline)

        await feed(pipeline, timeline((VOICE_A, 1.3), (VOICE_B, 6.0), (0.0, 1.5)))
        received = await finish(pipeline, events)

        segments = spans(received)
        assert segments[0] == (0.0, 1.6, "Speaker A")
        assert segments[1][0] == 1.6
        assert segments[1][1] == pytest.approx(8.5, abs=0.06)
        assert segments[1][2] == "Speaker B"
        assert len(segments) == 2
        assert speaker_changes(received) == ["Speaker A", "Speaker B", None]

    async def test_interrupt_splits_at_current_frame(self, build):
        # Probes disabled: the short-window interrupt check is the only mid-chunk path
        pipeline = build(tuned(PROBE_INTERVAL_SPEECH_SECONDS=1e9, INTERRUPT_TIMEOUT_SECONDS=2.0))
        events = await start(pipeline)

        await feed(pipeline, timeline((VOICE_A, 4.0), (0.0, 1.5), (VOICE_A, 2.5), (VOICE_B, 3.0)))
        received = await finish(pipeline, events)

        assert spans(received) == [
            (0.0, 5.2, "Speaker A"),
            (5.5, 8.15, "Speaker A"),
            (8.15, 11.0, "Speaker B"),
        ]

    async def test_stalled_interrupt_check_is_bounded(self, build):
        s = tuned(PROBE_INTERVAL_SPEECH_SECONDS=1e9)
        # first chunk gets its embedding; every later call stalls
        embedder = VoiceKeyEmbedder(s, stall=1.0, stall_after=1)
        pipeline = build(s, embedder=embedder)
        events = await start(pipeline)
        await feed(pipeline, timeline((VOICE_A, 4.0), (0.0, 1.5)))

        # 60 frames -> 10 interrupt windows against the stalled model
        frames = timeline((VOICE_B, 3.0))
        started = time.perf_counter()
        await feed(pipeline, frames)
        elapsed = time.perf_counter() - started
        assert elapsed < 10 * s.INTERRUPT_TIMEOUT_SECONDS + 0.5

        received = await finish(pipeline, events)
        # timed-out checks never split
        assert [span[:2] for span in spans(received)] == [(0.0, 5.2), (5.5, 8.5)]

    async def test_stalled_embedder_never_blocks_ingestion(self, build):
        s = tuned(PROBE_EMBED_TIMEOUT_SECONDS=0.1, CHUNK_EMBED_TIMEOUT_SECONDS=0.2)
        embedder = VoiceKeyEmbedder(s, stall=1.0)
        pipeline = build(s, embedder=embedder)
        events = await start(pipeline)

        # 8.5s of audio with probes, interrupt checks and a chunk cut, all stalled
        started = time.perf_counter()
        await feed(pipeline, timeline((VOICE_A, 4.0), (0.0, 1.5), (VOICE_B, 3.0)))
        elapsed = time.perf_counter() - started
        assert elapsed < 2.0
        # late results are dropped, not treated as model failures
        assert pipeline.speaker_state is DetectorState.READY

        received = await finish(pipeline, events)
        # without embeddings both chunks are attributed by fallback signature
        assert spans(received) == [(0.0, 5.2, "Speaker A"), (5.5, 8.5, "Speaker B")]

    async def test_speaker_cap_in_fallback(self, build, settings):
        pipeline = build(**fallback_models(settings))
        events = await start(pipeline)
        for level in (0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8):
            await feed(pipeline, timeline((level, 3.5), (0.0, 1.3)))
        received = await finish(pipeline, events)

        labels = [span[2] for span in spans(received)]
        assert len(labels) == 8
        assert pipeline.speaker_count == 0  # cleared by stop
        assert set(labels) == {f"Speaker {c}" for c in "ABCDEF"}
        assert labels[:6] == [f"Speaker {c}" for c in "ABCDEF"]

    async def test_repeated_voice_keeps_label(self, build):
        pipeline = build()
        events = await start(pipeline)
        for _ in range(4):
            await feed(pipeline, timeline((VOICE_B, 3.5), (0.0, 1.3)))
        assert pipeline.speaker_count == 1
        received = await finish(pipeline, events)
        assert {span[2] for span in spans(received)} == {"Speaker A"}


class TestLifecycle:
    async def test_restart_resets_labels(self, build):
        pipeline = build()
        events = await start(pipeline, "first")
        await feed(pipeline, timeline((VOICE_A, 4.0), (0.0, 1.3), (VOICE_B, 4.0), (0.0, 1.3)))
        first = await finish(pipeline, events)
        assert [span[2] for span in spans(first)] == ["Speaker A", "Speaker B"]

        events = await start(pipeline, "second")
        await feed(pipeline, timeline((VOICE_B, 4.0), (0.0, 1.3)))
        second = await finish(pipeline, events)
        assert [span[2] for span in spans(second)] == ["Speaker A"]
        assert {e.segment.session_id for e in second if isinstance(e, SegmentEvent)} == {"second"}

    async def test_start_stops_previous_run(self, build):
        pipeline = build()
        first_events = await start(pipeline, "first")
        await feed(pipeline, timeline((VOICE_A, 2.0)))
        second_events = await start(pipeline, "second")

        first = [event async for event in first_events]
        assert spans(first) == [(0.0, 2.0, "Speaker A")]
        assert isinstance(first[-1], StoppedEvent)
        await finish(pipeline, second_events)

    async def test_stop_is_idempotent(self, build):
        pipeline = build()
        events = await start(pipeline)
        await pipeline.stop()
        await pipeline.stop()
        received = [event async for event in events]
        assert sum(isinstance(e, StoppedEvent) for e in received) == 1

    async def test_stale_warmup_cannot_promote(self, build):
        gate = threading.Event()
        pipeline = build(vad=EnergyVAD(gate=gate))
        events = await pipeline.start(PipelineConfig(session_id="s1"))
        await asyncio.sleep(0.01)
        await pipeline.stop()
        [event async for event in events]

        gate.set()
        await asyncio.sleep(0.1)
        assert pipeline.vad_state is DetectorState.LOADING

        events = await start(pipeline)
        assert pipeline.vad_state is DetectorState.READY
        await finish(pipeline, events)

    async def test_vad_failure_mid_run_falls_back(self, build):
        pipeline = build(vad=EnergyVAD(fail_after=20))
        events = await start(pipeline)
        assert pipeline.vad_state is DetectorState.READY

        await feed(pipeline, timeline((VOICE_A, 4.0), (0.0, 1.5)))
        assert pipeline.vad_state is DetectorState.FALLBACK
        received = await finish(pipeline, events)
        assert spans(received) == [(0.0, 5.2, "Speaker A")]

    async def test_submit_when_stopped_is_ignored(self, build):
        pipeline = build()
        pipeline.submit(captured(VOICE_A))
        await pipeline.drain()
        assert not pipeline.is_running

    async def test_event_buffer_keeps_newest(self, build):
        pipeline = build(tuned(EVENT_BUFFER_SIZE=10))
        events = await start(pipeline)
        await feed(pipeline, timeline((0.0, 2.5)))
        received = await finish(pipeline, events)

        assert len(received) == 10
        assert isinstance(received[-1], StoppedEvent)
        timers = [e.elapsed for e in received if isinstance(e, TimerEvent)]
        assert timers[-1] == pytest.approx(2.5)


class TestModelWorker:
    async def test_late_call_keeps_worker_busy(self):
        worker = ModelWorker("test-worker")
        release = threading.Event()
        with pytest.raises(asyncio.TimeoutError):
            await worker.call(0.05, release.wait, 5.0)
        assert worker.busy

        release.set()
        for _ in range(100):
            if not worker.busy:
                break
            await asyncio.sleep(0.01)
        assert not worker.busy
        assert await worker.call(1.0, sum, [1, 2]) == 3
        worker.shutdown()
