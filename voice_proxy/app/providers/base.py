"""Base interfaces for provider adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from .types import ProviderEvent, ProviderSessionInfo, SessionConfig, TranscriptEvent


class RealtimeProvider(ABC):
    """Streaming speech-to-speech contract consumed by realtime sessions."""

    provider_name: str

    @abstractmethod
    async def connect(self) -> ProviderSessionInfo:
        """Opens the provider stream and returns startup metadata."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the provider stream is currently open."""

    @abstractmethod
    async def configure(self, config: SessionConfig) -> None:
        """Sends session configuration (modalities, voice, formats, VAD)."""

    @abstractmethod
    async def append_audio(self, audio_b64: str) -> None:
        """Appends base64 PCM16 audio to the provider input buffer."""

    @abstractmethod
    async def commit_audio(self) -> None:
        """Marks the end of the buffered caller utterance."""

    @abstractmethod
    async def request_response(self) -> None:
        """Asks the provider to generate a response."""

    @abstractmethod
    def events(self) -> AsyncIterator[ProviderEvent]:
        """Yields normalized provider events until the provider closes."""

    @abstractmethod
    async def close(self) -> None:
        """Releases provider resources."""


class SpeechSynthesizer(ABC):
    """Request/response text-to-speech contract."""

    provider_name: str

    @abstractmethod
    async def synthesize(self, text: str, **options: Any) -> bytes:
        """Returns encoded audio for ``text``."""

    async def close(self) -> None:
        """Releases provider resources."""


class SpeechTranscriber(ABC):
    """Request/response speech-to-text contract."""

    provider_name: str

    @abstractmethod
    async def transcribe(self, audio: bytes, **options: Any) -> dict[str, Any]:
        """Returns the provider's structured transcription result."""

    async def close(self) -> None:
        """Releases provider resources."""


class StreamingTranscriber(ABC):
    """Streaming speech-to-text contract."""

    provider_name: str

    @abstractmethod
    async def connect(self) -> None:
        """Opens the provider stream."""

    @abstractmethod
    async def send_audio(self, audio_bytes: bytes) -> None:
        """Sends raw caller audio."""

    @abstractmethod
    def transcripts(self) -> AsyncIterator[TranscriptEvent]:
        """Yields transcripts until the provider closes."""

    @abstractmethod
    async def close(self) -> None:
        """Releases provider resources."""
