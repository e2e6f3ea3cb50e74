"""OpenAI Realtime provider adapter implementation."""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any
from urllib.parse import urlencode

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosedError

from ..errors import ErrorKind, NotConnectedError, ProviderError, classify_error, kind_for_message
from .base import RealtimeProvider
from .types import ProviderEvent, ProviderSessionInfo, SessionConfig

_LOGGER = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "wss://api.openai.com/v1/realtime"
DEFAULT_MODEL = "gpt-4o-realtime-preview-2024-12-17"

# Server event types that map one-to-one onto a normalized event name.
_SIMPLE_EVENTS = {
    "session.created": "session_ready",
    "session.updated": "session_configured",
    "input_audio_buffer.speech_started": "speech_started",
    "input_audio_buffer.speech_stopped": "speech_stopped",
    "input_audio_buffer.committed": "audio_committed",
    "response.created": "response_started",
    "response.audio.done": "audio_done",
    "response.output_audio.done": "audio_done",
    "response.done": "response_done",
}
_AUDIO_DELTA_EVENTS = {"response.audio.delta", "response.output_audio.delta"}
_TRANSCRIPT_EVENTS = {"conversation.item.input_audio_transcription.completed"}

Connector = Callable[..., Awaitable[Any]]


class OpenAIRealtimeProvider(RealtimeProvider):
    """Realtime provider speaking the OpenAI realtime websocket protocol."""

    def __init__(
        self,
        *,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        model: str = DEFAULT_MODEL,
        provider_name: str = "openai-realtime",
        connector: Connector = ws_connect,
        verbose_events: bool = False,
    ) -> None:
        """Initializes adapter state without opening a connection.

        Args:
            api_key: Bearer credential for the realtime API.
            endpoint: Websocket endpoint without query string.
            model: Realtime model identifier.
            provider_name: Catalog id reported in events and errors.
            connector: Websocket connect coroutine (injected by tests).
            verbose_events: Include full raw payloads in ``raw_event`` logs.
        """
        self.provider_name = provider_name
        self._api_key = api_key
        self._endpoint = endpoint
        self._model = model
        self._connector = connector
        self._verbose_events = verbose_events
        self._ws: Any | None = None
        self._open = False

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._open

    async def connect(self) -> ProviderSessionInfo:
        """Opens the realtime websocket.

        Raises:
            ProviderError: Classified handshake or network failure.
        """
        if not self._api_key:
            raise ProviderError(
                "OpenAI API key is not configured",
                kind=ErrorKind.AUTHENTICATION,
                provider=self.provider_name,
            )
        url = f"{self._endpoint}?{urlencode({'model': self._model})}"
        _LOGGER.debug("Connecting to OpenAI realtime endpoint.", extra={"url": url})
        try:
            self._ws = await self._connector(
                url,
                additional_headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "OpenAI-Beta": "realtime=v1",
                },
            )
        except Exception as exc:
            raise classify_error(exc, provider=self.provider_name) from exc
        self._open = True
        _LOGGER.info("Connected to OpenAI realtime API.", extra={"model": self._model})
        return ProviderSessionInfo(
            provider_name=self.provider_name,
            model_name=self._model,
            metadata_json={"endpoint": self._endpoint},
        )

    async def configure(self, config: SessionConfig) -> None:
        """Sends ``session.update`` built from ``config``."""
        session: dict[str, Any] = {
            "modalities": list(config.modalities),
            "instructions": config.instructions,
            "voice": config.voice,
            "input_audio_format": config.input_audio_format,
            "output_audio_format": config.output_audio_format,
            "temperature": config.temperature,
            "max_response_output_tokens": config.max_output_tokens,
            "turn_detection": None,
        }
        if config.transcription_model:
            session["input_audio_transcription"] = {"model": config.transcription_model}
        if config.turn_detection is not None:
            session["turn_detection"] = {
                "type": config.turn_detection.type,
                "threshold": config.turn_detection.threshold,
                "prefix_padding_ms": config.turn_detection.prefix_padding_ms,
                "silence_duration_ms": config.turn_detection.silence_duration_ms,
            }
        await self._send({"type": "session.update", "session": session})

    async def append_audio(self, audio_b64: str) -> None:
        await self._send({"type": "input_audio_buffer.append", "audio": audio_b64})

    async def commit_audio(self) -> None:
        await self._send({"type": "input_audio_buffer.commit"})

    async def request_response(self) -> None:
        await self._send({"type": "response.create"})

    async def events(self) -> AsyncIterator[ProviderEvent]:
        """Yields normalized events until the websocket closes.

        A clean close ends iteration; an abnormal close raises a classified
        ``ProviderError``.
        """
        ws = self._require_ws()
        try:
            async for message in ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    _LOGGER.warning("Failed to parse OpenAI realtime message.")
                    continue
                if not isinstance(data, dict):
                    continue
                yield self._map_event(data)
        except ConnectionClosedError as exc:
            raise ProviderError(
                f"OpenAI realtime connection closed: {exc}",
                kind=ErrorKind.NETWORK,
                provider=self.provider_name,
            ) from exc
        finally:
            self._open = False

    async def close(self) -> None:
        """Closes the websocket; safe to call repeatedly."""
        ws = self._ws
        self._ws = None
        self._open = False
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
            _LOGGER.debug("OpenAI realtime websocket closed.")

    def _map_event(self, data: dict[str, Any]) -> ProviderEvent:
        """Maps one OpenAI server event onto a ``ProviderEvent``."""
        event_type = str(data.get("type", "unknown"))
        common: dict[str, Any] = {
            "provider_name": self.provider_name,
            "external_event_type": event_type,
            "external_event_id": data.get("event_id"),
            "response_id": data.get("response_id"),
            "item_id": data.get("item_id"),
        }

        if event_type in _AUDIO_DELTA_EVENTS:
            return ProviderEvent(event_name="audio_delta", audio_fragment=data.get("delta") or "", **common)

        if event_type in _TRANSCRIPT_EVENTS:
            return ProviderEvent(event_name="transcript_input", transcript=data.get("transcript") or "", **common)

        if event_type == "error":
            error = data.get("error") if isinstance(data.get("error"), dict) else {}
            message = str(error.get("message") or "Unknown OpenAI error")
            return ProviderEvent(
                event_name="provider_error",
                error_message=message,
                error_code=error.get("code"),
                payload_json={"error": error, "kind": kind_for_message(message).value},
                **common,
            )

        if event_type in _SIMPLE_EVENTS:
            session_id = None
            session = data.get("session")
            if isinstance(session, dict) and session.get("id"):
                session_id = str(session["id"])
            response = data.get("response")
            payload: dict[str, Any] = {}
            if isinstance(response, dict):
                payload["response_status"] = response.get("status")
                common["response_id"] = common["response_id"] or response.get("id")
            return ProviderEvent(
                event_name=_SIMPLE_EVENTS[event_type],
                external_session_id=session_id,
                payload_json=payload,
                **common,
            )

        return ProviderEvent(
            event_name="raw_event",
            payload_json=data if self._verbose_events else {"raw_type": event_type},
            **common,
        )

    async def _send(self, payload: dict[str, Any]) -> None:
        if not self.is_connected:
            raise NotConnectedError("Not connected to OpenAI Realtime API")
        await self._require_ws().send(json.dumps(payload))

    def _require_ws(self) -> Any:
        """Returns the active websocket or raises when not connected."""
        if self._ws is None:
            raise NotConnectedError("OpenAIRealtimeProvider.connect() must be called before use")
        return self._ws
