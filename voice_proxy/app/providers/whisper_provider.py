"""OpenAI Whisper file transcription adapter."""

from __future__ import annotations

import json
from typing import Any

from ..errors import ErrorKind, ProviderError
from .base import SpeechTranscriber
from .http_client import ProviderHttpClient

DEFAULT_ENDPOINT = "https://api.openai.com/v1/audio/transcriptions"
DEFAULT_MODEL = "whisper-1"


class WhisperTranscriber(SpeechTranscriber):
    """Transcribes one audio file per call through the Whisper REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        provider_name: str = "whisper",
    ) -> None:
        self.provider_name = provider_name
        self._endpoint = endpoint
        self._http = ProviderHttpClient(
            provider_name=provider_name,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def transcribe(self, audio: bytes, **options: Any) -> dict[str, Any]:
        """Uploads ``audio`` and returns the parsed JSON result.

        Raises:
            ProviderError: Classified upstream failure, ``PARSE_ERROR`` when
                the body is not JSON.
        """
        data = {
            "model": options.get("model") or DEFAULT_MODEL,
            "language": options.get("language") or "en",
            "response_format": "json",
        }
        if options.get("prompt"):
            data["prompt"] = options["prompt"]
        filename = options.get("filename") or "audio.wav"
        content_type = options.get("content_type") or "audio/wav"
        response = await self._http.post(
            self._endpoint,
            data=data,
            files={"file": (filename, audio, content_type)},
        )
        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise ProviderError(
                f"Whisper returned a non-JSON body: {exc}",
                kind=ErrorKind.PARSE_ERROR,
                provider=self.provider_name,
            ) from exc
        return body if isinstance(body, dict) else {"text": str(body)}

    async def close(self) -> None:
        await self._http.close()
