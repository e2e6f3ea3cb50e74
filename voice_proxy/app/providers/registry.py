"""Provider catalog and adapter resolution."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from ..config import settings
from ..errors import (
    CapabilityMismatchError,
    MissingCredentialError,
    UnknownProviderError,
    UnsupportedProviderError,
)
from .base import RealtimeProvider, SpeechSynthesizer, SpeechTranscriber, StreamingTranscriber
from .deepgram_provider import DeepgramTranscriber
from .elevenlabs_provider import ElevenLabsSynthesizer
from .openai_realtime_provider import OpenAIRealtimeProvider
from .types import AdapterVariant, ProviderSpec
from .whisper_provider import WhisperTranscriber

_LOGGER = logging.getLogger(__name__)

# Builds an adapter from its catalog entry, credential and per-call options.
AdapterFactory = Callable[[ProviderSpec, str, dict[str, Any]], Any]


def _spec(
    provider_id: str,
    name: str,
    kind: str,
    capabilities: Iterable[str],
    endpoint: str,
    auth_scheme: str,
    credential_env: str,
    models: Iterable[str],
    variant: AdapterVariant = AdapterVariant.UNSUPPORTED,
) -> ProviderSpec:
    return ProviderSpec(
        provider_id=provider_id,
        name=name,
        kind=kind,  # type: ignore[arg-type]
        capabilities=frozenset(capabilities),
        endpoint=endpoint,
        auth_scheme=auth_scheme,
        credential_env=credential_env,
        variant=variant,
        models=tuple(models),
    )


DEFAULT_CATALOG: tuple[ProviderSpec, ...] = (
    _spec(
        "openai-realtime", "OpenAI Realtime API", "realtime",
        ("speech-to-speech", "real-time", "function-calling"),
        "wss://api.openai.com/v1/realtime", "bearer", "OPENAI_API_KEY",
        ("gpt-4o-realtime-preview-2024-12-17",), AdapterVariant.REALTIME,
    ),
    _spec(
        "deepgram", "Deepgram Nova-3", "stt",
        ("speech-to-text", "real-time", "pre-recorded"),
        "wss://api.deepgram.com/v1/listen", "token", "DEEPGRAM_API_KEY",
        ("nova-3", "nova-2", "whisper"), AdapterVariant.STREAMING_TRANSCRIBER,
    ),
    _spec(
        "whisper", "OpenAI Whisper", "stt",
        ("speech-to-text", "pre-recorded"),
        "https://api.openai.com/v1/audio/transcriptions", "bearer", "OPENAI_API_KEY",
        ("whisper-1",), AdapterVariant.TRANSCRIBER,
    ),
    _spec(
        "elevenlabs", "ElevenLabs TTS", "tts",
        ("text-to-speech", "voice-cloning", "real-time"),
        "https://api.elevenlabs.io/v1/text-to-speech", "xi-api-key", "ELEVENLABS_API_KEY",
        ("eleven_multilingual_v2", "eleven_turbo_v2", "eleven_english_v1"), AdapterVariant.SYNTHESIZER,
    ),
    _spec(
        "assemblyai", "AssemblyAI Universal-2", "stt",
        ("speech-to-text", "real-time", "pre-recorded"),
        "wss://api.assemblyai.com/v2/realtime/ws", "token", "ASSEMBLYAI_API_KEY",
        ("universal-2", "universal-1"),
    ),
    _spec(
        "google-stt", "Google Cloud Speech-to-Text", "stt",
        ("speech-to-text", "real-time", "pre-recorded"),
        "wss://speech.googleapis.com/v1/speech:streamingrecognize", "service-account", "GOOGLE_API_KEY",
        ("latest", "command_and_search", "phone_call", "video"),
    ),
    _spec(
        "azure-stt", "Microsoft Azure Speech Services", "stt",
        ("speech-to-text", "real-time", "pre-recorded"),
        "wss://{region}.stt.speech.microsoft.com/speech/recognition/conversation/cognitiveservices/v1",
        "subscription-key", "AZURE_SPEECH_KEY",
        ("unified", "conversation", "dictation"),
    ),
    _spec(
        "playht", "PlayHT", "tts",
        ("text-to-speech", "real-time", "voice-cloning"),
        "https://api.play.ht/api/v2/tts", "x-api-key", "PLAYHT_API_KEY",
        ("PlayHT2.0-turbo", "PlayHT2.0", "PlayHT1.0"),
    ),
    _spec(
        "google-tts", "Google Cloud Text-to-Speech", "tts",
        ("text-to-speech", "neural-voices"),
        "https://texttospeech.googleapis.com/v1/text:synthesize", "service-account", "GOOGLE_API_KEY",
        ("standard", "wavenet", "neural2", "polyglot"),
    ),
    _spec(
        "azure-tts", "Microsoft Azure Text-to-Speech", "tts",
        ("text-to-speech", "neural-voices", "custom-voices"),
        "https://{region}.tts.speech.microsoft.com/cognitiveservices/v1", "subscription-key", "AZURE_SPEECH_KEY",
        ("neural", "standard"),
    ),
    _spec(
        "amazon-polly", "Amazon Polly", "tts",
        ("text-to-speech", "neural-voices"),
        "https://polly.{region}.amazonaws.com/v1/speech", "aws-signature", "AWS_ACCESS_KEY_ID",
        ("standard", "neural", "long-form"),
    ),
    _spec(
        "murf", "Murf AI", "tts",
        ("text-to-speech", "voice-customization"),
        "https://api.murf.ai/v1/speech/generate", "api-key", "MURF_API_KEY",
        ("murf-ai",),
    ),
    _spec(
        "elevenlabs-conversational", "ElevenLabs Conversational AI", "conversational",
        ("speech-to-speech", "conversation", "interruption"),
        "wss://api.elevenlabs.io/v1/convai/conversation", "xi-api-key", "ELEVENLABS_API_KEY",
        ("conversational-v1",),
    ),
    _spec(
        "ibm-watson", "IBM Watson Speech", "hybrid",
        ("speech-to-text", "text-to-speech", "custom-models"),
        "https://api.us-south.speech-to-text.watson.cloud.ibm.com", "iam-token", "IBM_WATSON_API_KEY",
        ("watson-stt", "watson-tts"),
    ),
)


def _build_openai_realtime(spec: ProviderSpec, credential: str, options: dict[str, Any]) -> RealtimeProvider:
    return OpenAIRealtimeProvider(
        api_key=credential,
        endpoint=spec.endpoint,
        model=options.get("model") or settings.REALTIME_MODEL or spec.default_model or "",
        provider_name=spec.provider_id,
        verbose_events=settings.VERBOSE_PROVIDER_EVENTS,
    )


def _build_deepgram(spec: ProviderSpec, credential: str, options: dict[str, Any]) -> StreamingTranscriber:
    return DeepgramTranscriber(
        api_key=credential,
        endpoint=spec.endpoint,
        model=options.get("model") or "nova-2",
        language=options.get("language") or "en",
        provider_name=spec.provider_id,
    )


def _build_whisper(spec: ProviderSpec, credential: str, options: dict[str, Any]) -> SpeechTranscriber:
    del options
    return WhisperTranscriber(api_key=credential, endpoint=spec.endpoint, provider_name=spec.provider_id)


def _build_elevenlabs(spec: ProviderSpec, credential: str, options: dict[str, Any]) -> SpeechSynthesizer:
    del options
    return ElevenLabsSynthesizer(api_key=credential, endpoint=spec.endpoint, provider_name=spec.provider_id)


DEFAULT_FACTORIES: dict[str, AdapterFactory] = {
    "openai-realtime": _build_openai_realtime,
    "deepgram": _build_deepgram,
    "whisper": _build_whisper,
    "elevenlabs": _build_elevenlabs,
}

_VARIANT_KINDS: dict[AdapterVariant, str] = {
    AdapterVariant.REALTIME: "speech-to-speech",
    AdapterVariant.SYNTHESIZER: "text-to-speech",
    AdapterVariant.TRANSCRIBER: "speech-to-text",
    AdapterVariant.STREAMING_TRANSCRIBER: "speech-to-text",
}


class ProviderRegistry:
    """Read-only catalog of providers plus the adapter factory for each one.

    Providers without an adapter are registered as ``UNSUPPORTED`` so that
    requesting one fails at lookup time rather than inside a call.
    """

    def __init__(
        self,
        specs: Iterable[ProviderSpec] = DEFAULT_CATALOG,
        *,
        factories: dict[str, AdapterFactory] | None = None,
        credentials: Callable[[str], str] | None = None,
    ) -> None:
        self._specs: dict[str, ProviderSpec] = {}
        self._factories: dict[str, AdapterFactory] = {}
        self._credentials = credentials or settings.credential_for
        factory_map = DEFAULT_FACTORIES if factories is None else factories
        for spec in specs:
            self.register(spec, factory_map.get(spec.provider_id))

    def register(self, spec: ProviderSpec, factory: AdapterFactory | None = None) -> None:
        """Adds or replaces one catalog entry.

        Raises:
            ValueError: If ``spec`` claims an adapter variant but no factory
                is supplied.
        """
        if spec.implemented and factory is None:
            raise ValueError(f"Provider {spec.provider_id!r} declares {spec.variant.value} but has no adapter")
        self._specs[spec.provider_id] = spec
        if factory is not None:
            self._factories[spec.provider_id] = factory
        else:
            self._factories.pop(spec.provider_id, None)
            _LOGGER.debug("Registered provider without adapter.", extra={"provider": spec.provider_id})

    def get(self, provider_id: str) -> ProviderSpec:
        """Returns the catalog entry for ``provider_id``.

        Raises:
            UnknownProviderError: If the id is not in the catalog.
        """
        try:
            return self._specs[provider_id]
        except KeyError:
            available = ", ".join(sorted(self._specs))
            raise UnknownProviderError(
                f'Provider "{provider_id}" not supported. Available providers: {available}'
            ) from None

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._specs

    def list_providers(self, kind: str | None = None) -> list[ProviderSpec]:
        """Lists providers, optionally filtered by kind or capability."""
        specs = list(self._specs.values())
        if kind is None:
            return specs
        return [spec for spec in specs if spec.supports(kind)]

    def credential(self, spec: ProviderSpec) -> str:
        """Returns the credential configured for ``spec``.

        Raises:
            MissingCredentialError: If no credential is configured.
        """
        value = self._credentials(spec.credential_env)
        if not value:
            raise MissingCredentialError(f'API key required for provider "{spec.provider_id}" ({spec.credential_env})')
        return value

    def resolve(self, provider_id: str, *, capability: str | None = None) -> ProviderSpec:
        """Validates that ``provider_id`` can serve ``capability``.

        Raises:
            UnknownProviderError: Unknown id.
            UnsupportedProviderError: Catalog entry has no adapter.
            CapabilityMismatchError: Provider does not declare ``capability``.
        """
        spec = self.get(provider_id)
        if not spec.implemented:
            raise UnsupportedProviderError(f"{spec.name} adapter not yet implemented")
        if capability and not spec.supports(capability):
            supported = ", ".join(sorted(spec.capabilities))
            raise CapabilityMismatchError(
                f'Provider "{provider_id}" does not support "{capability}". Supported: {supported}'
            )
        return spec

    def validate(self, provider_id: str) -> dict[str, Any]:
        """Returns ``{"valid": bool, "error": str | None}`` without raising."""
        try:
            spec = self.resolve(provider_id)
            self.credential(spec)
        except (UnknownProviderError, UnsupportedProviderError, MissingCredentialError) as exc:
            return {"valid": False, "error": str(exc)}
        return {"valid": True, "error": None}

    def create_realtime(self, provider_id: str, **options: Any) -> RealtimeProvider:
        return self._create(provider_id, AdapterVariant.REALTIME, options)

    def create_synthesizer(self, provider_id: str, **options: Any) -> SpeechSynthesizer:
        return self._create(provider_id, AdapterVariant.SYNTHESIZER, options)

    def create_transcriber(self, provider_id: str, **options: Any) -> SpeechTranscriber:
        return self._create(provider_id, AdapterVariant.TRANSCRIBER, options)

    def create_streaming_transcriber(self, provider_id: str, **options: Any) -> StreamingTranscriber:
        return self._create(provider_id, AdapterVariant.STREAMING_TRANSCRIBER, options)

    def require(self, provider_id: str, variant: AdapterVariant) -> tuple[ProviderSpec, str]:
        """Checks that ``provider_id`` can build a ``variant`` adapter right now.

        Returns:
            The catalog entry and its credential.

        Raises:
            UnknownProviderError: Unknown id.
            UnsupportedProviderError: Catalog entry has no adapter.
            CapabilityMismatchError: Provider has a different adapter contract.
            MissingCredentialError: No credential is configured.
        """
        spec = self.resolve(provider_id, capability=_VARIANT_KINDS[variant])
        if spec.variant is not variant:
            raise CapabilityMismatchError(
                f'Provider "{provider_id}" is a {spec.variant.value} adapter, not {variant.value}'
            )
        return spec, self.credential(spec)

    def _create(self, provider_id: str, variant: AdapterVariant, options: dict[str, Any]) -> Any:
        spec, credential = self.require(provider_id, variant)
        _LOGGER.debug("Creating provider adapter.", extra={"provider": provider_id, "variant": variant.value})
        return self._factories[provider_id](spec, credential, options)
