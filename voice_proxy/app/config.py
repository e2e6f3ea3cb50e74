"""Runtime configuration for the voice proxy service."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for voice proxy runtime behavior.

    Values are loaded from environment variables, with `.env` used for local
    development defaults.

    Attributes:
        HOST: Interface the HTTP/websocket server binds to.
        PORT: Port the HTTP/websocket server listens on.
        LOG_LEVEL: Application log verbosity.
        WEBSOCKETS_LOG_LEVEL: Log level for `websockets` library internals.
        HTTPX_LOG_LEVEL: Log level for `httpx` request logging.
        OPENAI_API_KEY: Credential for OpenAI realtime and Whisper.
        ELEVENLABS_API_KEY: Credential for ElevenLabs text-to-speech.
        DEEPGRAM_API_KEY: Credential for Deepgram streaming transcription.
        DEFAULT_REALTIME_PROVIDER: Provider used when a client does not pick one.
        REALTIME_MODEL: Realtime model identifier.
        REALTIME_VOICE: Voice used for synthesized model audio.
        REALTIME_INSTRUCTIONS: Instructions text sent with session configuration.
        REALTIME_TRANSCRIPTION_MODEL: Model used to transcribe caller audio.
        TURN_DETECTION_TYPE: Provider VAD mode (`server_vad` or `semantic_vad`).
        TURN_DETECTION_THRESHOLD: VAD activation threshold.
        TURN_DETECTION_PREFIX_PADDING_MS: Audio kept before detected speech.
        TURN_DETECTION_SILENCE_MS: Silence that ends a caller turn.
        REALTIME_TEMPERATURE: Sampling temperature for realtime responses.
        REALTIME_MAX_OUTPUT_TOKENS: Response token cap.
        AUDIO_OUTPUT_MAX_BYTES: Bound on buffered base64 output per response.
        ROUTER_MAX_RETRIES: Default retry count against a primary provider.
        ROUTER_TIMEOUT_MS: Default per-attempt timeout.
        ROUTER_BASE_DELAY_MS: Base delay for exponential backoff.
        ROUTER_DELAY_CAP_MS: Upper bound on a single backoff delay.
        BREAKER_FAILURE_THRESHOLD: Consecutive failures that open a breaker.
        BREAKER_COOLDOWN_S: Time an open breaker waits before a trial call.
        VERBOSE_PROVIDER_EVENTS: Logs every raw provider event (high volume).
        DB_CONNECTION_STRING: Optional Postgres DSN for usage persistence.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    HOST: str = "0.0.0.0"
    PORT: int = 3000
    LOG_LEVEL: str = "info"
    WEBSOCKETS_LOG_LEVEL: str = "info"
    HTTPX_LOG_LEVEL: str = "warning"

    OPENAI_API_KEY: str = ""
    ELEVENLABS_API_KEY: str = ""
    DEEPGRAM_API_KEY: str = ""

    DEFAULT_REALTIME_PROVIDER: str = "openai-realtime"
    REALTIME_MODEL: str = "gpt-4o-realtime-preview-2024-12-17"
    REALTIME_VOICE: str = "alloy"
    REALTIME_INSTRUCTIONS: str = "You are a helpful assistant."
    REALTIME_TRANSCRIPTION_MODEL: str = "whisper-1"
    TURN_DETECTION_TYPE: str = "server_vad"
    TURN_DETECTION_THRESHOLD: float = Field(default=0.5, ge=0.0, le=1.0)
    TURN_DETECTION_PREFIX_PADDING_MS: int = Field(default=300, ge=0)
    TURN_DETECTION_SILENCE_MS: int = Field(default=500, ge=0)
    REALTIME_TEMPERATURE: float = Field(default=0.6, ge=0.0, le=2.0)
    REALTIME_MAX_OUTPUT_TOKENS: int = Field(default=4096, ge=1)
    AUDIO_OUTPUT_MAX_BYTES: int = Field(default=16 * 1024 * 1024, ge=1)

    ROUTER_MAX_RETRIES: int = Field(default=3, ge=0)
    ROUTER_TIMEOUT_MS: int = Field(default=30_000, ge=1)
    ROUTER_BASE_DELAY_MS: int = Field(default=1_000, ge=0)
    ROUTER_DELAY_CAP_MS: int = Field(default=30_000, ge=0)
    BREAKER_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    BREAKER_COOLDOWN_S: float = Field(default=30.0, ge=0.0)

    VERBOSE_PROVIDER_EVENTS: bool = False
    DB_CONNECTION_STRING: str | None = None

    def credential_for(self, env_key: str) -> str:
        """Returns the configured credential stored under ``env_key``.

        Args:
            env_key: Settings attribute holding the credential.

        Returns:
            Credential value, or an empty string when unset.
        """
        return str(getattr(self, env_key, "") or "")


settings = Settings()
