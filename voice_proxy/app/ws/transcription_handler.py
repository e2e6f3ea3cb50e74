"""Client websocket bridge for streaming speech-to-text."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from ..errors import ProviderError, classify_error
from ..providers.base import StreamingTranscriber

_LOGGER = logging.getLogger(__name__)


class TranscriptionStreamHandler:
    """Relays binary audio frames to a streaming transcriber.

    Clients send raw linear16 audio as binary frames and receive
    ``{"type": "transcript", ...}`` messages. The stream ends when either
    side closes; the transcriber is always closed on the way out.
    """

    def __init__(self, websocket: WebSocket, *, transcriber: StreamingTranscriber):
        self.websocket = websocket
        self.transcriber = transcriber
        self._audio_task: asyncio.Task[None] | None = None
        self._transcript_task: asyncio.Task[None] | None = None
        self._is_shutting_down = False
        self._audio_frames = 0
        self._transcripts = 0

    async def run(self) -> None:
        """Accepts the websocket and relays until one side finishes."""
        await self.websocket.accept()
        try:
            await self.transcriber.connect()
        except Exception as exc:
            error = classify_error(exc, provider=self.transcriber.provider_name)
            await self._send_json({"type": "error", "message": f"Failed to connect to provider: {error.message}"})
            return
        await self._send_json({"type": "connected", "provider": self.transcriber.provider_name})

        self._audio_task = asyncio.create_task(self._client_audio_loop())
        self._transcript_task = asyncio.create_task(self._transcript_loop())
        await asyncio.wait({self._audio_task, self._transcript_task}, return_when=asyncio.FIRST_COMPLETED)

    async def shutdown(self) -> None:
        """Idempotently stops relaying and closes both ends."""
        if self._is_shutting_down:
            return
        self._is_shutting_down = True
        current = asyncio.current_task()
        tasks = [task for task in (self._audio_task, self._transcript_task) if task and task is not current]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

        with contextlib.suppress(Exception):
            await self.transcriber.close()
        if self.websocket.client_state != WebSocketState.DISCONNECTED:
            with contextlib.suppress(Exception):
                await self.websocket.close()
        _LOGGER.debug(
            "Transcription stream closed.",
            extra={"audio_frames": self._audio_frames, "transcripts": self._transcripts},
        )

    async def _client_audio_loop(self) -> None:
        while True:
            frame = await self.websocket.receive()
            if frame.get("type") == "websocket.disconnect":
                _LOGGER.info("Transcription client disconnected.")
                return
            audio = frame.get("bytes")
            if audio is None:
                await self._send_json({"type": "error", "message": "Expected binary audio frames"})
                continue
            self._audio_frames += 1
            await self.transcriber.send_audio(audio)

    async def _transcript_loop(self) -> None:
        try:
            async for event in self.transcriber.transcripts():
                self._transcripts += 1
                await self._send_json(
                    {
                        "type": "transcript",
                        "text": event.text,
                        "is_final": event.is_final,
                        "confidence": event.confidence,
                    }
                )
        except ProviderError as exc:
            _LOGGER.warning("Transcript stream failed.", extra={"provider": exc.provider, "error": exc.message})
            await self._send_json({"type": "error", "message": exc.message})

    async def _send_json(self, payload: dict[str, Any]) -> None:
        if self.websocket.client_state == WebSocketState.DISCONNECTED:
            return
        await self.websocket.send_text(json.dumps(payload))
