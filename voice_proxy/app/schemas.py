"""Request and response models for the HTTP surface."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class TtsRequest(BaseModel):
    text: str = Field(min_length=1, max_length=5000)
    provider: str = "elevenlabs"
    fallback_providers: list[str] = Field(default_factory=list)
    voice_id: Optional[str] = None
    model: Optional[str] = None
    stability: float = Field(default=0.5, ge=0.0, le=1.0)
    similarity_boost: float = Field(default=0.8, ge=0.0, le=1.0)
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)
    timeout_ms: Optional[int] = Field(default=None, ge=1)

    @field_validator("text")
    @classmethod
    def validate_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("text must not be blank")
        return value


class ProviderSummary(BaseModel):
    id: str
    name: str
    kind: str
    capabilities: list[str]
    endpoint: str
    auth: str
    models: list[str]
    implemented: bool
    valid: bool
    error: Optional[str] = None


class BreakerResetResponse(BaseModel):
    provider: str
    circuit_breaker: dict
