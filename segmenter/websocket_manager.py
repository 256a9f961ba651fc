"""
WebSocketManager: one WebSocket = one segmentation run.

Binary messages are PCM 16-bit mono at SAMPLE_RATE; the receiver cuts them into
capture frames which are submitted to the pipeline without waiting. A forwarder task
relays every pipeline event to the client as JSON, so slow model inference never
blocks reading from the socket.

Query parameter `language` (repeatable) lists the session languages; with exactly one,
segments carry it as their language id.

A text message {"type": "stop"} ends the run early; otherwise it ends on disconnect.
Either way the pipeline is always stopped: the open chunk is finalized and the
client (if still connected) sees the trailing segments and a final "stopped" event.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator

from fastapi import WebSocket

from segmenter.audio.receiver import AudioReceiver
from segmenter.config import Settings, get_settings
from segmenter.pipeline.events import PipelineConfig, PipelineEvent, event_to_json
from segmenter.pipeline.orchestrator import LiveSessionPipeline

logger = logging.getLogger(__name__)

# Max wait for the forwarder to deliver the tail of the event stream after stop()
_FORWARDER_DRAIN_TIMEOUT = 10.0


def _is_stop_command(text: str | None) -> bool:
    if not text:
        return False
    try:
        payload = json.loads(text)
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("type") == "stop"


class WebSocketManager:
    """Bridges one client connection and one LiveSessionPipeline."""

    def __init__(
        self,
        websocket: WebSocket,
        pipeline: LiveSessionPipeline,
        settings: Settings | None = None,
    ) -> None:
        self._ws = websocket
        self._pipeline = pipeline
        self._settings = settings or get_settings()
        self._receiver = AudioReceiver(self._settings)
        self._forwarder_task: asyncio.Task[Any] | None = None
        self._closed = False
        self._session_id = uuid.uuid4().hex[:12]

    @property
    def session_id(self) -> str:
        return self._session_id

    async def _send_text(self, text: str) -> None:
        if self._closed:
            return
        try:
            await self._ws.send_text(text)
        except Exception:
            self._closed = True

    async def _forward_events(self, events: AsyncIterator[PipelineEvent]) -> None:
        """Relay events until StoppedEvent. Keeps consuming after the client is gone."""
        async for event in events:
            await self._send_text(event_to_json(event))

    async def run(self) -> None:
        """Main loop: receive binary, frame it, submit to the pipeline."""
        # ?language=xx (repeatable) names the languages spoken in this session
        config = PipelineConfig(
            session_id=self._session_id,
            language_codes=tuple(self._ws.query_params.getlist("language")),
        )
        events = await self._pipeline.start(config)
        logger.info("Segmentation session %s opened", self._session_id)
        await self._send_text(json.dumps({"type": "session", "session_id": self._session_id}))
        self._forwarder_task = asyncio.create_task(self._forward_events(events))

        try:
            while not self._closed:
                try:
                    msg = await self._ws.receive()
                except Exception:
                    break
                if msg.get("type") == "websocket.disconnect":
                    self._closed = True
                    break
                data = msg.get("bytes")
                if data is None:
                    if _is_stop_command(msg.get("text")):
                        break
                    continue
                self._receiver.feed(data)
                for frame in self._receiver.drain_frames():
                    self._pipeline.submit(frame)
        finally:
            tail = self._receiver.flush()
            if tail is not None:
                self._pipeline.submit(tail)
            await self._pipeline.stop()
            if self._forwarder_task:
                try:
                    await asyncio.wait_for(self._forwarder_task, timeout=_FORWARDER_DRAIN_TIMEOUT)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    self._forwarder_task.cancel()
                    try:
                        await self._forwarder_task
                    except asyncio.CancelledError:
                        pass
            self._pipeline.close()
            logger.info("Segmentation session %s closed", self._session_id)
