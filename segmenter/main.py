"""
FastAPI app: WebSocket endpoint for live speech segmentation and speaker attribution.

Client sends binary PCM 16-bit mono 16kHz. Server responds with JSON events:
{ "type": "session" | "waveform" | "timer" | "speaker" | "segment" | "stopped", ... }

Segments carry speaker label and session-relative start/end; audio stays server-side
for the transcription collaborator. Send {"type": "stop"} to finish without disconnecting.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from segmenter.config import Settings, get_settings
from segmenter.diarization.embedding import create_speaker_embedder
from segmenter.pipeline.orchestrator import LiveSessionPipeline
from segmenter.websocket_manager import WebSocketManager

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    """Root logger from LOG_LEVEL / LOG_FILE. No-op if the root logger is already configured."""
    settings = settings or get_settings()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.LOG_FILE:
        handlers.append(logging.FileHandler(settings.LOG_FILE, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format=_LOG_FORMAT,
        handlers=handlers,
    )


def create_pipeline(app: FastAPI) -> LiveSessionPipeline:
    """
    New pipeline per connection. VAD instances are per run (they hold recurrent state);
    the speaker embedder is stateless and shared via app.state so the model loads once.
    Tests install app.state.pipeline_factory to inject fakes.
    """
    factory: Callable[[], LiveSessionPipeline] | None = getattr(app.state, "pipeline_factory", None)
    if factory is not None:
        return factory()
    settings = get_settings()
    return LiveSessionPipeline(settings, embedder=getattr(app.state, "speaker_embedder", None))


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings)
    # Model weights load lazily on the first run's warm-up
    if getattr(app.state, "pipeline_factory", None) is None:
        app.state.speaker_embedder = create_speaker_embedder(settings)
    logger.info("Segmenter ready (VAD backend: %s)", settings.VAD_BACKEND)
    yield
    app.state.speaker_embedder = None


app = FastAPI(
    title="Live Speech Segmenter",
    description="WebSocket streaming segmentation with VAD and speaker attribution",
    lifespan=lifespan,
)


@app.websocket("/ws/segment")
async def websocket_segment(websocket: WebSocket) -> None:
    """
    WebSocket: client sends raw PCM 16-bit mono 16kHz (binary).
    Server sends one JSON object per pipeline event; "stopped" is always last.
    """
    await websocket.accept()
    manager = WebSocketManager(websocket, create_pipeline(websocket.app))
    try:
        await manager.run()
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Segmentation session %s failed", manager.session_id)
    try:
        await websocket.close()
    except Exception:
        pass


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
