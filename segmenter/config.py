"""Pipeline configuration. Loads from env vars."""
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """Segmenter settings. Override via environment variables."""

    # Audio: float32 mono, 16kHz after capture
    SAMPLE_RATE: int = 16000
    # Capture buffer: 1024 samples per frame (64ms @ 16kHz)
    CAPTURE_FRAME_SAMPLES: int = 1024
    # Normalized amplitude = clip(rms * gain, 0, 1)
    AMPLITUDE_GAIN: float = 12.0

    # Waveform snapshot sent to UI on every frame
    WAVEFORM_BARS: int = 18
    WAVEFORM_FLOOR: float = 0.03
    # Oldest events are dropped once the consumer falls this far behind
    EVENT_BUFFER_SIZE: int = 500
    # stop() waits this long for queued frames before cancelling in-flight work
    STOP_DRAIN_TIMEOUT_SECONDS: float = 30.0

    # Voice activity: "silero" (probability model) | "webrtc" (binary per 30ms frame)
    VAD_BACKEND: Literal["silero", "webrtc"] = "silero"
    VAD_SPEECH_PROBABILITY: float = 0.5
    # Used while the VAD is loading or after it failed
    FALLBACK_SPEECH_AMPLITUDE: float = 0.06
    VAD_WEBRTC_AGGRESSIVENESS: int = 2

    # Chunk cut policy
    SILENCE_CUTOFF_SECONDS: float = 1.2
    MIN_CHUNK_SECONDS: float = 3.2
    MAX_CHUNK_SECONDS: float = 12.0
    # Chunk opened after at least this much silence counts as turn-taking
    TURN_TAKING_SILENCE_SECONDS: float = 0.5

    # Speaker matching (cosine similarity against running embeddings).
    # Confident and loose bands attribute identically; both kept separately overridable.
    SPEAKER_CONFIDENT_SIMILARITY: float = 0.65
    SPEAKER_LOOSE_SIMILARITY: float = 0.52
    SPEAKER_CANDIDATE_SIMILARITY: float = 0.58
    SPEAKER_DRAMATIC_DIFFERENCE: float = 0.40
    PENDING_CHUNKS_BEFORE_NEW_SPEAKER: int = 2
    # Chunks shorter than this never mint a speaker
    MIN_NEW_SPEAKER_SECONDS: float = 2.5
    MAX_SPEAKERS_PER_SESSION: int = 6
    # Weighted L1 over (amplitude, zcr, rms) when embeddings are unavailable
    FALLBACK_SIGNATURE_DISTANCE: float = 0.015

    # Speaker embedding extractor (resemblyzer)
    EMBEDDING_WINDOW_SECONDS: float = 10.0
    EMBEDDING_MIN_VOICED_SECONDS: float = 1.5
    EMBEDDING_TRIM_THRESHOLD: float = 0.003
    EMBEDDING_DEVICE: Literal["cpu", "cuda"] = "cpu"
    # Deadlines for embedding calls on the ingest path; late results are discarded
    PROBE_EMBED_TIMEOUT_SECONDS: float = 0.5
    CHUNK_EMBED_TIMEOUT_SECONDS: float = 2.0

    # Mid-chunk speaker boundary detection
    PROBE_INTERVAL_SPEECH_SECONDS: float = 0.25
    PROBE_WINDOW_SPEECH_SECONDS: float = 1.6
    PROBE_SHORT_WINDOW_SPEECH_SECONDS: float = 0.8
    # Speaker with this many observations gets the short probe window
    PROBE_RELIABLE_OBSERVATIONS: int = 5
    PROBE_TURN_TAKING_SIMILARITY: float = 0.45
    # Hysteresis: change must be stable this long before splitting (0 = immediate)
    SPEAKER_CHANGE_CUTOFF_SECONDS: float = 0.0
    BOUNDARY_BACKTRACK_SECONDS: float = 1.0
    MIN_SPLIT_LEADING_SECONDS: float = 1.6

    # Interrupt check: short rolling window raced against a deadline
    INTERRUPT_WINDOW_SAMPLES: int = 4096
    INTERRUPT_TIMEOUT_SECONDS: float = 0.08
    INTERRUPT_SIMILARITY: float = 0.40

    # Breath-pause sub-splitting of finalized chunks
    SUBSPLIT_HOP_SECONDS: float = 0.032
    SUBSPLIT_SILENCE_PROBABILITY: float = 0.30
    SUBSPLIT_MIN_PAUSE_SECONDS: float = 0.3
    SUBSPLIT_MIN_PIECE_SECONDS: float = 0.8

    # Transcript-candidate placeholders (text is filled in by the transcription side)
    LANGUAGE_PLACEHOLDER: str = "AUTO"
    TRANSCRIPT_PLACEHOLDER: str = "Queued for automatic transcription..."

    # Logging: level (DEBUG, INFO, WARNING, ERROR); file path (empty = console only).
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"


def get_settings() -> Settings:
    return Settings()
