"""Provider adapters, contracts and catalog."""

from .base import RealtimeProvider, SpeechSynthesizer, SpeechTranscriber, StreamingTranscriber
from .deepgram_provider import DeepgramTranscriber
from .elevenlabs_provider import ElevenLabsSynthesizer
from .openai_realtime_provider import OpenAIRealtimeProvider
from .registry import DEFAULT_CATALOG, ProviderRegistry
from .types import (
    AdapterVariant,
    ProviderEvent,
    ProviderSessionInfo,
    ProviderSpec,
    SessionConfig,
    TranscriptEvent,
    TurnDetection,
)
from .whisper_provider import WhisperTranscriber

__all__ = [
    "DEFAULT_CATALOG",
    "AdapterVariant",
    "DeepgramTranscriber",
    "ElevenLabsSynthesizer",
    "OpenAIRealtimeProvider",
    "ProviderEvent",
    "ProviderRegistry",
    "ProviderSessionInfo",
    "ProviderSpec",
    "RealtimeProvider",
    "SessionConfig",
    "SpeechSynthesizer",
    "SpeechTranscriber",
    "StreamingTranscriber",
    "TranscriptEvent",
    "TurnDetection",
    "WhisperTranscriber",
]
