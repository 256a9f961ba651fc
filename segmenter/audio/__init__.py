"""Audio pipeline: receive, VAD, chunk, rolling buffer, breath-pause sub-splitting."""
from .models import AudioFrame, CapturedFrame
from .receiver import AudioReceiver, frame_from_samples
from .vad import VADUnavailableError, VoiceActivityClassifier, create_vad_classifier
from .chunker import ChunkAccumulator
from .rolling_buffer import RollingBuffer
from .splitter import SubChunk, SubChunkSplitter

__all__ = [
    "AudioFrame",
    "CapturedFrame",
    "AudioReceiver",
    "frame_from_samples",
    "VADUnavailableError",
    "VoiceActivityClassifier",
    "create_vad_classifier",
    "ChunkAccumulator",
    "RollingBuffer",
    "SubChunk",
    "SubChunkSplitter",
]
