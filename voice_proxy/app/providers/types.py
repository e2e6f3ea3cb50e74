"""Provider-agnostic types for voice provider integrations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

ProviderKind = Literal["realtime", "stt", "tts", "conversational", "hybrid"]


def _utcnow() -> datetime:
    """Returns current UTC wall clock time."""
    return datetime.now(timezone.utc)


class AdapterVariant(str, Enum):
    """Adapter contract a catalog entry resolves to."""

    REALTIME = "realtime"
    SYNTHESIZER = "synthesizer"
    TRANSCRIBER = "transcriber"
    STREAMING_TRANSCRIBER = "streaming_transcriber"
    UNSUPPORTED = "unsupported"


@dataclass(slots=True, frozen=True)
class ProviderSpec:
    """Static connection metadata for one provider.

    Attributes:
        provider_id: Catalog identifier (for example ``openai-realtime``).
        name: Human-readable provider name.
        kind: Primary operation family.
        capabilities: Declared supported operation kinds.
        endpoint: Base URL of the provider API.
        auth_scheme: How the credential is presented (``bearer``, ``token``,
            ``xi-api-key``, ...).
        credential_env: Settings attribute holding the credential.
        variant: Adapter contract, ``UNSUPPORTED`` when no adapter exists.
        models: Known model identifiers, first is the default.
    """

    provider_id: str
    name: str
    kind: ProviderKind
    capabilities: frozenset[str]
    endpoint: str
    auth_scheme: str
    credential_env: str
    variant: AdapterVariant = AdapterVariant.UNSUPPORTED
    models: tuple[str, ...] = ()

    @property
    def implemented(self) -> bool:
        return self.variant is not AdapterVariant.UNSUPPORTED

    @property
    def default_model(self) -> str | None:
        return self.models[0] if self.models else None

    def supports(self, requested: str) -> bool:
        """Returns whether ``requested`` matches the kind or a capability."""
        return requested == self.kind or requested in self.capabilities

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.provider_id,
            "name": self.name,
            "kind": self.kind,
            "capabilities": sorted(self.capabilities),
            "endpoint": self.endpoint,
            "auth": self.auth_scheme,
            "models": list(self.models),
            "implemented": self.implemented,
        }


@dataclass(slots=True, frozen=True)
class TurnDetection:
    """Provider-side voice activity detection policy."""

    type: str = "server_vad"
    threshold: float = 0.5
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 500


@dataclass(slots=True, frozen=True)
class SessionConfig:
    """Configuration sent to a realtime provider once it is ready.

    Attributes:
        instructions: System instructions for the conversation.
        voice: Output voice identity.
        modalities: Requested output modalities.
        input_audio_format: Wire format of caller audio.
        output_audio_format: Wire format of provider audio.
        transcription_model: Model used to transcribe caller audio, if any.
        turn_detection: VAD policy, ``None`` for manual commits only.
        temperature: Sampling temperature.
        max_output_tokens: Response token cap.
    """

    instructions: str = "You are a helpful assistant."
    voice: str = "alloy"
    modalities: tuple[str, ...] = ("text", "audio")
    input_audio_format: str = "pcm16"
    output_audio_format: str = "pcm16"
    transcription_model: str | None = "whisper-1"
    turn_detection: TurnDetection | None = field(default_factory=TurnDetection)
    temperature: float = 0.6
    max_output_tokens: int = 4096


@dataclass(slots=True, frozen=True)
class ProviderSessionInfo:
    """Startup metadata returned by a realtime provider.

    Attributes:
        provider_name: Provider identifier (for example, ``openai-realtime``).
        model_name: Primary model identifier.
        external_session_id: Provider-native session identifier when available.
        metadata_json: Optional free-form startup metadata.
    """

    provider_name: str
    model_name: str | None = None
    external_session_id: str | None = None
    metadata_json: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ProviderEvent:
    """Normalized provider event consumed by realtime sessions.

    Attributes:
        event_name: Canonical event identifier (``session_ready``,
            ``speech_started``, ``audio_delta``, ``audio_done``, ...).
        provider_name: Event source provider.
        occurred_at: Event timestamp in UTC.
        external_event_type: Provider-native event type.
        external_event_id: Provider-native event identifier.
        external_session_id: Provider session id when available.
        audio_fragment: Base64 audio text for ``audio_delta`` events.
        transcript: Transcript text for transcript events.
        response_id: Provider response id when available.
        item_id: Provider item id associated with event.
        error_message: Error text when event represents failure.
        error_code: Provider-native error code.
        payload_json: Compact event payload for logging.
    """

    event_name: str
    provider_name: str
    occurred_at: datetime = field(default_factory=_utcnow)
    external_event_type: str | None = None
    external_event_id: str | None = None
    external_session_id: str | None = None
    audio_fragment: str | None = None
    transcript: str | None = None
    response_id: str | None = None
    item_id: str | None = None
    error_message: str | None = None
    error_code: str | None = None
    payload_json: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class TranscriptEvent:
    """Transcript produced by a streaming speech-to-text provider."""

    provider_name: str
    text: str
    is_final: bool
    confidence: float | None = None
    occurred_at: datetime = field(default_factory=_utcnow)
