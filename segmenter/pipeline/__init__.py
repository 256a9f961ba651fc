"""Pipeline orchestration: one serialized run per session, events out."""
from __future__ import annotations

from segmenter.pipeline.events import PipelineConfig, PipelineEvent, TranscriptCandidate
from segmenter.pipeline.lifecycle import DetectorState
from segmenter.pipeline.orchestrator import LiveSessionPipeline

__all__ = ["PipelineConfig", "PipelineEvent", "TranscriptCandidate", "DetectorState", "LiveSessionPipeline"]
