"""ElevenLabs text-to-speech adapter."""

from __future__ import annotations

import logging
from typing import Any

from .base import SpeechSynthesizer
from .http_client import ProviderHttpClient

_LOGGER = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.elevenlabs.io/v1/text-to-speech"
DEFAULT_VOICE_ID = "pNInz6obpgDQGcFmaJgB"
DEFAULT_MODEL = "eleven_multilingual_v2"


class ElevenLabsSynthesizer(SpeechSynthesizer):
    """Synthesizes speech through the ElevenLabs REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        provider_name: str = "elevenlabs",
    ) -> None:
        self.provider_name = provider_name
        self._endpoint = endpoint.rstrip("/")
        self._http = ProviderHttpClient(
            provider_name=provider_name,
            headers={"xi-api-key": api_key, "Accept": "audio/mpeg"},
        )

    async def synthesize(self, text: str, **options: Any) -> bytes:
        """Returns MPEG audio for ``text``.

        Args:
            text: Text to speak.
            **options: ``voice_id``, ``model``, ``stability``,
                ``similarity_boost``, ``style``, ``speaker_boost``.

        Raises:
            ProviderError: Classified upstream failure.
        """
        voice_id = options.get("voice_id") or DEFAULT_VOICE_ID
        body = {
            "text": text,
            "model_id": options.get("model") or DEFAULT_MODEL,
            "voice_settings": {
                "stability": options.get("stability", 0.5),
                "similarity_boost": options.get("similarity_boost", 0.8),
                "style": options.get("style", 0),
                "use_speaker_boost": options.get("speaker_boost", True),
            },
        }
        _LOGGER.debug(
            "Requesting ElevenLabs synthesis.",
            extra={"voice_id": voice_id, "model": body["model_id"], "characters": len(text)},
        )
        response = await self._http.post(f"{self._endpoint}/{voice_id}", json=body)
        return response.content

    async def close(self) -> None:
        await self._http.close()
