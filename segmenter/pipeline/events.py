"""
Pipeline events, in emission order per frame: waveform, timer, then any speaker /
segment events produced by that frame. Stopped is always last.

Segment events carry raw samples for the transcription side; text is a placeholder
until that side fills it in. JSON encoding omits samples (sample_count only).
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Union

import numpy as np


@dataclass(frozen=True)
class PipelineConfig:
    """Run-level identifiers. A single language code becomes every segment's language id."""

    session_id: str
    language_codes: tuple[str, ...] = ()


@dataclass(frozen=True)
class TranscriptCandidate:
    """One sub-chunk ready for offline transcription. Offsets are seconds since session start."""

    id: str
    session_id: str
    speaker_label: str
    language_id: str
    text: str
    start_offset: float
    end_offset: float
    samples: np.ndarray = field(repr=False)
    sample_rate: float = 16000.0


@dataclass(frozen=True)
class WaveformEvent:
    levels: tuple[float, ...]
    type: str = "waveform"


@dataclass(frozen=True)
class TimerEvent:
    elapsed: float
    type: str = "timer"


@dataclass(frozen=True)
class SpeakerEvent:
    """Live speaker changed; label None when nobody is attributed."""

    label: str | None
    type: str = "speaker"


@dataclass(frozen=True)
class SegmentEvent:
    segment: TranscriptCandidate
    chunk_seconds: float
    type: str = "segment"


@dataclass(frozen=True)
class StoppedEvent:
    type: str = "stopped"


PipelineEvent = Union[WaveformEvent, TimerEvent, SpeakerEvent, SegmentEvent, StoppedEvent]


def event_to_dict(event: PipelineEvent) -> dict:
    if isinstance(event, WaveformEvent):
        return {"type": event.type, "levels": [round(v, 4) for v in event.levels]}
    if isinstance(event, TimerEvent):
        return {"type": event.type, "elapsed": round(event.elapsed, 3)}
    if isinstance(event, SpeakerEvent):
        return {"type": event.type, "label": event.label}
    if isinstance(event, SegmentEvent):
        seg = event.segment
        return {
            "type": event.type,
            "id": seg.id,
            "session_id": seg.session_id,
            "speaker": seg.speaker_label,
            "language": seg.language_id,
            "text": seg.text,
            "start": round(seg.start_offset, 3),
            "end": round(seg.end_offset, 3),
            "chunk_seconds": round(event.chunk_seconds, 3),
            "sample_rate": seg.sample_rate,
            "sample_count": int(len(seg.samples)),
        }
    return {"type": event.type}


def event_to_json(event: PipelineEvent) -> str:
    return json.dumps(event_to_dict(event))
