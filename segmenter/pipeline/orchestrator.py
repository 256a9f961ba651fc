"""
LiveSessionPipeline: serialized controller for live segmentation and speaker attribution.

One pipeline = one consumer task draining a frame queue. Every piece of mutable state
(chunk accumulator, speaker registry, boundary detector, counters) is touched only from
that task, so frame-processing steps never run concurrently. Model inference runs in
worker threads and only returns values. Embedding calls made while frames wait (interrupt
checks, probes, chunk attribution) are raced against deadlines; a late result is
discarded and the chunk goes on without it.

Per frame: waveform + timer events -> speech verdict (VAD, or amplitude while the VAD
is loading / failed) -> accumulate -> mid-chunk boundary checks -> cut policy.
Per finalized chunk: speaker identification and breath-pause sub-splitting run in
parallel on the same frames, then one segment event per sub-chunk is emitted.

Detector warm-up runs in the background; frames are accepted immediately. A run token
keeps a warm-up that finishes after stop()/start() from touching the new run.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, AsyncIterator, Callable, Sequence

import numpy as np

from segmenter.audio.chunker import ChunkAccumulator
from segmenter.audio.models import (
    AudioFrame,
    CapturedFrame,
    chunk_duration,
    concat_samples,
    speech_seconds,
)
from segmenter.audio.splitter import SubChunk, SubChunkSplitter
from segmenter.audio.vad import MODEL_SAMPLE_RATE, VoiceActivityClassifier, create_vad_classifier
from segmenter.config import Settings, get_settings
from segmenter.diarization.boundary import MidChunkBoundaryDetector
from segmenter.diarization.embedding import SpeakerEmbedder, create_speaker_embedder
from segmenter.diarization.models import SpeakerObservation
from segmenter.diarization.speaker_tracker import SpeakerRegistry, signature_for_frames
from segmenter.pipeline.events import (
    PipelineConfig,
    PipelineEvent,
    SegmentEvent,
    SpeakerEvent,
    StoppedEvent,
    TimerEvent,
    TranscriptCandidate,
    WaveformEvent,
)
from segmenter.pipeline.lifecycle import DetectorLifecycle, DetectorState

logger = logging.getLogger(__name__)

# Chunks shorter than this are reported with this length
MIN_REPORTED_CHUNK_SECONDS = 0.2


class ModelWorker:
    """
    One worker thread for one kind of model call, raced against a deadline.

    A call that misses its deadline keeps running and keeps the worker busy; callers
    check `busy` and skip instead of queueing behind it, so a stalled model never
    stacks up threads or delays frame ingestion.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._future: Future | None = None

    @property
    def busy(self) -> bool:
        return self._future is not None and not self._future.done()

    async def call(self, timeout: float, fn: Callable[..., Any], *args: Any) -> Any:
        """Raises asyncio.TimeoutError once timeout passes; the late result is discarded."""
        self._future = self._executor.submit(fn, *args)
        return await asyncio.wait_for(asyncio.wrap_future(self._future), timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


class LiveSessionPipeline:
    """
    Usage:
        events = await pipeline.start(PipelineConfig(session_id=...))
        pipeline.submit(frame)  # from the capture side, any number of times
        await pipeline.stop()   # finalizes the open chunk; `events` ends with StoppedEvent
    """

    def __init__(
        self,
        settings: Settings | None = None,
        vad: VoiceActivityClassifier | None = None,
        batch_vad: VoiceActivityClassifier | None = None,
        embedder: SpeakerEmbedder | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        s = self._settings
        # Streaming and batch inference need separate instances: batch mode resets recurrent state.
        self._vad = vad or create_vad_classifier(s)
        self._batch_vad = batch_vad or create_vad_classifier(s)
        self._embedder = embedder or create_speaker_embedder(s)

        self._accumulator = ChunkAccumulator(s)
        self._registry = SpeakerRegistry(s)
        self._boundary = MidChunkBoundaryDetector(s)
        self._splitter = SubChunkSplitter(s)
        self._vad_state = DetectorLifecycle("VAD")
        self._speaker_state = DetectorLifecycle("Speaker embedding")

        # Embedding calls made while frames are waiting, one worker per kind
        self._interrupt_worker = ModelWorker("interrupt-check")
        self._probe_worker = ModelWorker("speaker-probe")
        self._chunk_worker = ModelWorker("chunk-embedding")

        self._lifecycle_lock = asyncio.Lock()
        self._frames: asyncio.Queue[CapturedFrame | None] | None = None
        self._events: asyncio.Queue[PipelineEvent] | None = None
        self._consumer_task: asyncio.Task | None = None
        self._warmup_tasks: list[asyncio.Task] = []
        self._config: PipelineConfig | None = None
        self._running = False
        self._run_token = uuid.uuid4().hex

        self._elapsed: float = 0.0
        self._waveform: deque[float] = deque([s.WAVEFORM_FLOOR] * s.WAVEFORM_BARS, maxlen=s.WAVEFORM_BARS)
        self._live_speaker: str | None = None
        self._last_speaker: str | None = None

    # --- public surface ---

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def vad_state(self) -> DetectorState:
        return self._vad_state.state

    @property
    def speaker_state(self) -> DetectorState:
        return self._speaker_state.state

    @property
    def live_speaker(self) -> str | None:
        return self._live_speaker

    @property
    def speaker_count(self) -> int:
        return self._registry.speaker_count

    async def start(self, config: PipelineConfig) -> AsyncIterator[PipelineEvent]:
        """Stop any previous run, then start a new one. Returns the run's event stream."""
        await self.stop()
        async with self._lifecycle_lock:
            self._reset_run_state()
            self._config = config
            self._events = asyncio.Queue()
            self._frames = asyncio.Queue()
            self._run_token = token = uuid.uuid4().hex
            self._running = True
            self._warmup_tasks = [
                asyncio.create_task(self._prepare_vad(token)),
                asyncio.create_task(self._prepare_speaker(token)),
            ]
            self._consumer_task = asyncio.create_task(self._consume(self._frames))
            logger.info("Pipeline started (session %s)", config.session_id)
            return self._event_stream(self._events)

    def submit(self, frame: CapturedFrame) -> None:
        """Queue one captured frame. Never blocks; ignored when not running."""
        if not self._running or self._frames is None:
            return
        self._frames.put_nowait(frame)

    async def ingest(self, frame: CapturedFrame) -> None:
        """Queue one frame and wait until it (and everything before it) is processed."""
        self.submit(frame)
        await self.drain()

    async def drain(self) -> None:
        """Wait until every queued frame has been processed."""
        if self._frames is not None and self._running:
            await self._frames.join()

    async def wait_for_warmup(self) -> None:
        """Wait for both detectors to leave the loading state (ready or fallback)."""
        if self._warmup_tasks:
            await asyncio.gather(*self._warmup_tasks, return_exceptions=True)

    async def stop(self) -> None:
        """
        Idempotent teardown: cancel warm-up, process queued frames, finalize the open chunk,
        emit StoppedEvent and clear all per-run state.
        """
        async with self._lifecycle_lock:
            if self._consumer_task is None and not self._running:
                return
            self._running = False

            for task in self._warmup_tasks:
                task.cancel()
            await asyncio.gather(*self._warmup_tasks, return_exceptions=True)
            self._warmup_tasks = []

            if self._consumer_task is not None and self._frames is not None:
                self._frames.put_nowait(None)
                try:
                    await asyncio.wait_for(
                        asyncio.shield(self._consumer_task),
                        timeout=self._settings.STOP_DRAIN_TIMEOUT_SECONDS,
                    )
                except asyncio.TimeoutError:
                    logger.warning("Frame queue not drained in time; cancelling in-flight work")
                    self._consumer_task.cancel()
                    await asyncio.gather(self._consumer_task, return_exceptions=True)
            self._consumer_task = None

            if self._accumulator.is_open:
                await self._finalize_chunk(self._accumulator.take())

            if self._live_speaker is not None:
                self._set_live_speaker(None)
            self._emit(StoppedEvent())
            logger.info("Pipeline stopped (session %s)", self._config.session_id if self._config else "-")

            self._events = None
            self._frames = None
            self._config = None
            self._reset_run_state()

    def close(self) -> None:
        """Release the model workers. The pipeline cannot be restarted afterwards."""
        for worker in (self._interrupt_worker, self._probe_worker, self._chunk_worker):
            worker.shutdown()

    # --- run state ---

    def _reset_run_state(self) -> None:
        s = self._settings
        self._elapsed = 0.0
        self._waveform = deque([s.WAVEFORM_FLOOR] * s.WAVEFORM_BARS, maxlen=s.WAVEFORM_BARS)
        self._accumulator.reset()
        self._registry.reset()
        self._boundary.reset()
        self._live_speaker = None
        self._last_speaker = None
        self._run_token = uuid.uuid4().hex
        self._vad_state.reset()
        self._speaker_state.reset()
        self._vad.reset()
        self._batch_vad.reset()
        self._embedder.reset()

    async def _prepare_vad(self, token: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._vad.prepare)
            await loop.run_in_executor(None, self._batch_vad.prepare)
        except Exception as e:
            if self._running and token == self._run_token:
                self._vad_state.mark_failed(e)
            return
        if self._running and token == self._run_token:
            self._vad_state.mark_ready()

    async def _prepare_speaker(self, token: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._embedder.prepare)
        except Exception as e:
            if self._running and token == self._run_token:
                self._speaker_state.mark_failed(e)
            return
        if self._running and token == self._run_token:
            self._speaker_state.mark_ready()

    async def _event_stream(self, queue: asyncio.Queue[PipelineEvent]) -> AsyncIterator[PipelineEvent]:
        while True:
            event = await queue.get()
            yield event
            if isinstance(event, StoppedEvent):
                return

    def _emit(self, event: PipelineEvent) -> None:
        if self._events is None:
            return
        # Keep the newest events when the consumer falls behind
        while self._events.qsize() >= self._settings.EVENT_BUFFER_SIZE:
            self._events.get_nowait()
        self._events.put_nowait(event)

    def _language_id(self) -> str:
        # A single configured language is known up front; otherwise the transcriber detects it
        codes = self._config.language_codes if self._config is not None else ()
        return codes[0] if len(codes) == 1 else self._settings.LANGUAGE_PLACEHOLDER

    def _set_live_speaker(self, label: str | None) -> None:
        if label == self._live_speaker:
            return
        self._live_speaker = label
        self._emit(SpeakerEvent(label=label))

    # --- frame processing (consumer task only) ---

    async def _consume(self, queue: asyncio.Queue[CapturedFrame | None]) -> None:
        while True:
            frame = await queue.get()
            try:
                if frame is None:
                    return
                await self._process_frame(frame)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Never stop accepting audio because of one bad frame
                logger.exception("Frame processing failed")
            finally:
                queue.task_done()

    async def _process_frame(self, captured: CapturedFrame) -> None:
        if not captured.is_valid():
            logger.debug("Skipping malformed frame (samples=%d, rate=%s)", len(captured.samples), captured.sample_rate)
            return

        duration = captured.duration if captured.duration > 0 else len(captured.samples) / captured.sample_rate
        timestamp = self._elapsed
        self._elapsed += duration

        self._waveform.append(captured.amplitude)
        self._emit(WaveformEvent(levels=tuple(self._waveform)))
        self._emit(TimerEvent(elapsed=self._elapsed))

        is_speech = await self._evaluate_speech(captured)
        frame = AudioFrame(
            timestamp=timestamp,
            duration=duration,
            sample_rate=captured.sample_rate,
            amplitude=captured.amplitude,
            zero_crossing_rate=captured.zero_crossing_rate,
            is_speech=is_speech,
            samples=np.asarray(captured.samples, dtype=np.float32),
        )

        appended = self._accumulator.push(frame)
        if appended and is_speech and self._speaker_state.is_ready:
            await self._detect_boundary(frame)

        reason = self._accumulator.cut_reason()
        if reason is not None:
            chunk = self._accumulator.take()
            self._boundary.start_chunk()
            logger.debug("Cut chunk (%s) at %.2fs, %.2fs long", reason, self._elapsed, chunk_duration(chunk))
            await self._finalize_chunk(chunk)

    async def _evaluate_speech(self, frame: CapturedFrame) -> bool:
        if self._vad_state.is_ready:
            loop = asyncio.get_running_loop()
            try:
                probability = await loop.run_in_executor(
                    None, self._vad.ingest_streaming, frame.samples, frame.sample_rate
                )
            except Exception as e:
                self._vad_state.mark_failed(e)
                probability = None
            if probability is not None:
                return probability >= self._settings.VAD_SPEECH_PROBABILITY
        return frame.amplitude >= self._settings.FALLBACK_SPEECH_AMPLITUDE

    async def _embed(
        self,
        worker: ModelWorker,
        timeout: float,
        samples: np.ndarray,
        sample_rate: float,
        min_voiced_samples: int | None = None,
    ) -> np.ndarray | None:
        """Embedding within the deadline, or None (not ready, worker busy, late, too little voice)."""
        if not self._speaker_state.is_ready:
            return None
        if worker.busy:
            logger.debug("%s skipped: previous call still running", worker.name)
            return None
        try:
            return await worker.call(timeout, self._embedder.embed, samples, sample_rate, min_voiced_samples)
        except asyncio.TimeoutError:
            logger.debug("%s timed out; result discarded", worker.name)
            return None
        except Exception as e:
            self._speaker_state.mark_failed(e)
            return None

    # --- mid-chunk boundaries ---

    async def _detect_boundary(self, frame: AudioFrame) -> None:
        window = self._boundary.on_speech(frame)
        if window is not None and await self._check_interrupt(window, frame.sample_rate):
            return
        if self._boundary.probe_due():
            await self._probe()

    async def _probe(self) -> None:
        self._boundary.mark_probed()
        frames = self._accumulator.frames
        window = self._boundary.probe_window(frames, self._registry, self._last_speaker)
        if window is None:
            return

        min_samples = int(self._settings.PROBE_SHORT_WINDOW_SPEECH_SECONDS * MODEL_SAMPLE_RATE)
        embedding = await self._embed(
            self._probe_worker,
            self._settings.PROBE_EMBED_TIMEOUT_SECONDS,
            concat_samples(window),
            window[0].sample_rate,
            min_samples,
        )
        if embedding is None:
            return

        threshold = self._boundary.similarity_threshold(self._accumulator.opened_after_silence)
        observation = self._registry.observe(embedding, threshold)
        split_time = self._boundary.evaluate(observation, frames[-1].end, frames[0].timestamp, threshold)
        if split_time is None:
            if observation.label is not None and self._boundary.change_candidate is None:
                self._set_live_speaker(observation.label)
            return

        index = self._boundary.plan_split(frames, split_time)
        if index is None:
            logger.debug("Speaker change at %.2fs postponed: chunk too short to split", split_time)
            return
        await self._split_chunk(index, observation)

    async def _check_interrupt(self, window: np.ndarray, sample_rate: float) -> bool:
        """Race one short-window check against INTERRUPT_TIMEOUT_SECONDS. True if the chunk was split."""
        reference = self._boundary.interrupt_reference(self._registry, self._last_speaker)
        if reference is None:
            return False
        embedding = await self._embed(
            self._interrupt_worker,
            self._settings.INTERRUPT_TIMEOUT_SECONDS,
            window,
            sample_rate,
            1,
        )
        if embedding is None or not self._boundary.is_interrupt(embedding, reference):
            return False

        frames = self._accumulator.frames
        threshold = self._boundary.similarity_threshold(self._accumulator.opened_after_silence)
        observation = self._registry.observe(embedding, threshold)
        index = self._boundary.plan_split(frames, frames[-1].timestamp)
        if index is None:
            # Too early to split: the chunk opened with this voice
            self._boundary.adopt(observation)
            return False
        logger.debug("Speaker interrupt at %.2fs", frames[-1].timestamp)
        await self._split_chunk(index, observation)
        return True

    async def _split_chunk(self, index: int, observation: SpeakerObservation) -> None:
        leading = self._accumulator.split_at(index)
        self._boundary.accept_split(observation)
        logger.debug(
            "Mid-chunk speaker split at %.2fs (%s)",
            self._accumulator.start_time or 0.0,
            observation.label or "new voice",
        )
        if speech_seconds(leading) > 0:
            await self._finalize_chunk(leading)
        if observation.label is not None:
            self._set_live_speaker(observation.label)

    # --- finalized chunks ---

    async def _finalize_chunk(self, frames: Sequence[AudioFrame]) -> None:
        if not frames or self._config is None:
            return
        first = frames[0]
        chunk_seconds = max(chunk_duration(frames), MIN_REPORTED_CHUNK_SECONDS)
        samples = concat_samples(frames)
        sample_rate = first.sample_rate

        speaker, pieces = await asyncio.gather(
            self._identify_speaker(frames, samples, sample_rate, chunk_seconds),
            self._split_sub_chunks(samples, sample_rate, first.timestamp, first.timestamp + chunk_seconds),
        )
        self._last_speaker = speaker
        self._set_live_speaker(speaker)
        logger.debug(
            "Chunk %.2f-%.2fs -> %s (%d sub-chunks)",
            first.timestamp,
            first.timestamp + chunk_seconds,
            speaker,
            len(pieces),
        )

        for piece in pieces:
            self._emit(
                SegmentEvent(
                    segment=TranscriptCandidate(
                        id=uuid.uuid4().hex,
                        session_id=self._config.session_id,
                        speaker_label=speaker,
                        language_id=self._language_id(),
                        text=self._settings.TRANSCRIPT_PLACEHOLDER,
                        start_offset=piece.start_offset,
                        end_offset=piece.end_offset,
                        samples=piece.samples,
                        sample_rate=sample_rate,
                    ),
                    chunk_seconds=chunk_seconds,
                )
            )

    async def _identify_speaker(
        self,
        frames: Sequence[AudioFrame],
        samples: np.ndarray,
        sample_rate: float,
        duration: float,
    ) -> str:
        embedding = await self._embed(
            self._chunk_worker,
            self._settings.CHUNK_EMBED_TIMEOUT_SECONDS,
            samples,
            sample_rate,
        )
        if embedding is not None and embedding.size:
            return self._registry.assign(embedding, duration)
        return self._registry.assign_fallback(signature_for_frames(frames, samples))

    async def _split_sub_chunks(
        self,
        samples: np.ndarray,
        sample_rate: float,
        start_offset: float,
        end_offset: float,
    ) -> list[SubChunk]:
        if not self._vad_state.is_ready:
            return self._splitter.split(samples, sample_rate, start_offset, end_offset, None)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None,
                self._splitter.split,
                samples,
                sample_rate,
                start_offset,
                end_offset,
                self._batch_vad,
            )
        except Exception as e:
            self._vad_state.mark_failed(e)
            return self._splitter.split(samples, sample_rate, start_offset, end_offset, None)
