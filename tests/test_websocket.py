"""Tests for the FastAPI surface: /health and the /ws/segment event stream."""
import json

import numpy as np
import pytest
from fastapi.testclient import TestClient

from segmenter.main import app
from segmenter.pipeline.orchestrator import LiveSessionPipeline
from tests.conftest import VOICE_A, EnergyVAD, VoiceKeyEmbedder


def pcm(level: float, seconds: float) -> bytes:
    return np.full(int(seconds * 16000), int(level * 32767), dtype=np.int16).tobytes()


@pytest.fixture
def client(settings):
    app.state.pipeline_factory = lambda: LiveSessionPipeline(
        settings,
        vad=EnergyVAD(),
        batch_vad=EnergyVAD(),
        embedder=VoiceKeyEmbedder(settings),
    )
    with TestClient(app) as test_client:
        yield test_client
    app.state.pipeline_factory = None


def receive_until_stopped(ws):
    messages = []
    while True:
        message = ws.receive_json()
        messages.append(message)
        if message["type"] == "stopped":
            return messages


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestSegmentSocket:
    def test_session_message_first(self, client):
        with client.websocket_connect("/ws/segment") as ws:
            session = ws.receive_json()
            assert session["type"] == "session"
            assert len(session["session_id"]) == 12
            ws.send_text(json.dumps({"type": "stop"}))
            messages = receive_until_stopped(ws)
        assert messages[-1] == {"type": "stopped"}

    def test_streamed_audio_yields_segments(self, client):
        with client.websocket_connect("/ws/segment") as ws:
            session_id = ws.receive_json()["session_id"]
            audio = pcm(VOICE_A, 4.0) + pcm(0.0, 1.5)
            # uneven message sizes exercise the receiver's remainder handling
            for offset in range(0, len(audio), 3001):
                ws.send_bytes(audio[offset : offset + 3001])
            ws.send_text(json.dumps({"type": "stop"}))
            messages = receive_until_stopped(ws)

        types = {m["type"] for m in messages}
        assert {"waveform", "timer", "speaker", "segment", "stopped"} <= types

        segments = [m for m in messages if m["type"] == "segment"]
        assert len(segments) == 1
        segment = segments[0]
        assert segment["session_id"] == session_id
        assert segment["speaker"] == "Speaker A"
        assert segment["start"] == 0.0
        assert segment["end"] > 4.0
        assert segment["text"] == "Queued for automatic transcription..."
        assert segment["sample_count"] > 0

        speakers = [m["label"] for m in messages if m["type"] == "speaker"]
        assert speakers == ["Speaker A", None]

        timers = [m["elapsed"] for m in messages if m["type"] == "timer"]
        assert timers == sorted(timers)
        assert timers[-1] == pytest.approx(5.5, abs=0.07)

    def test_unknown_text_messages_are_ignored(self, client):
        with client.websocket_connect("/ws/segment") as ws:
            ws.receive_json()
            ws.send_text("hello")
            ws.send_text(json.dumps({"type": "ping"}))
            ws.send_text(json.dumps({"type": "stop"}))
            messages = receive_until_stopped(ws)
        assert [m["type"] for m in messages] == ["stopped"]

    def test_single_language_is_carried_on_segments(self, client):
        audio = pcm(VOICE_A, 4.0) + pcm(0.0, 1.5)
        languages = {}
        for query in ("?language=th", "?language=th&language=en", ""):
            with client.websocket_connect(f"/ws/segment{query}") as ws:
                ws.receive_json()
                ws.send_bytes(audio)
                ws.send_text(json.dumps({"type": "stop"}))
                messages = receive_until_stopped(ws)
            languages[query] = {m["language"] for m in messages if m["type"] == "segment"}
        assert languages == {"?language=th": {"th"}, "?language=th&language=en": {"AUTO"}, "": {"AUTO"}}
