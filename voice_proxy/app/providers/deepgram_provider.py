"""Deepgram streaming speech-to-text adapter."""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlencode

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosedError

from ..errors import ErrorKind, NotConnectedError, ProviderError, classify_error
from .base import StreamingTranscriber
from .openai_realtime_provider import Connector
from .types import TranscriptEvent

_LOGGER = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "wss://api.deepgram.com/v1/listen"


class DeepgramTranscriber(StreamingTranscriber):
    """Streams linear16 audio to Deepgram and yields transcripts."""

    def __init__(
        self,
        *,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        model: str = "nova-2",
        language: str = "en",
        sample_rate: int = 16000,
        interim_results: bool = True,
        provider_name: str = "deepgram",
        connector: Connector = ws_connect,
    ) -> None:
        self.provider_name = provider_name
        self._api_key = api_key
        self._endpoint = endpoint
        self._params = {
            "encoding": "linear16",
            "sample_rate": sample_rate,
            "language": language,
            "model": model,
            "punctuate": "true",
            "smart_format": "true",
            "interim_results": "true" if interim_results else "false",
        }
        self._connector = connector
        self._ws: Any | None = None

    async def connect(self) -> None:
        """Opens the listen websocket.

        Raises:
            ProviderError: Classified handshake or network failure.
        """
        url = f"{self._endpoint}?{urlencode(self._params)}"
        try:
            self._ws = await self._connector(url, additional_headers={"Authorization": f"Token {self._api_key}"})
        except Exception as exc:
            raise classify_error(exc, provider=self.provider_name) from exc
        _LOGGER.info("Connected to Deepgram.", extra={"model": self._params["model"]})

    async def send_audio(self, audio_bytes: bytes) -> None:
        if self._ws is None:
            raise NotConnectedError("Not connected to Deepgram")
        await self._ws.send(audio_bytes)

    async def transcripts(self) -> AsyncIterator[TranscriptEvent]:
        """Yields transcripts from ``Results`` messages until the stream closes."""
        if self._ws is None:
            raise NotConnectedError("Not connected to Deepgram")
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    _LOGGER.warning("Failed to parse Deepgram message.")
                    continue
                event = self._to_transcript(data)
                if event is not None:
                    yield event
        except ConnectionClosedError as exc:
            raise ProviderError(
                f"Deepgram connection closed: {exc}",
                kind=ErrorKind.NETWORK,
                provider=self.provider_name,
            ) from exc

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is None:
            return
        with contextlib.suppress(Exception):
            await ws.send(json.dumps({"type": "CloseStream"}))
        with contextlib.suppress(Exception):
            await ws.close()

    def _to_transcript(self, data: Any) -> TranscriptEvent | None:
        if not isinstance(data, dict) or data.get("type", "Results") != "Results":
            return None
        alternatives = (data.get("channel") or {}).get("alternatives") or []
        if not alternatives:
            return None
        best = alternatives[0]
        text = str(best.get("transcript") or "")
        if not text:
            return None
        return TranscriptEvent(
            provider_name=self.provider_name,
            text=text,
            is_final=bool(data.get("is_final")),
            confidence=best.get("confidence"),
        )
