"""Error taxonomy and classification for provider calls."""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx
from websockets.exceptions import InvalidStatus


class ErrorKind(str, Enum):
    """Closed set of provider failure categories."""

    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    PARSE_ERROR = "PARSE_ERROR"
    UNKNOWN = "UNKNOWN"

    @property
    def retryable(self) -> bool:
        return self not in _NON_RETRYABLE


_NON_RETRYABLE = frozenset({ErrorKind.AUTHENTICATION, ErrorKind.AUTHORIZATION, ErrorKind.NOT_FOUND})


def _utcnow() -> datetime:
    """Returns current UTC wall clock time."""
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class ErrorRecord:
    """One failed provider attempt.

    Attributes:
        kind: Classified failure category.
        provider: Provider id the attempt ran against.
        attempt: Zero-based attempt number against that provider.
        retryable: Whether the router may retry the same provider.
        message: Upstream error text.
        timestamp: When the failure was observed (UTC).
    """

    kind: ErrorKind
    provider: str
    attempt: int
    retryable: bool
    message: str
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


class VoiceProxyError(Exception):
    """Base class for all voice proxy errors."""


class ProviderError(VoiceProxyError):
    """A classified failure raised at an adapter boundary."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        provider: str | None = None,
        attempt: int = 0,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.provider = provider
        self.attempt = attempt
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def to_record(self, *, provider: str | None = None, attempt: int | None = None) -> ErrorRecord:
        """Builds the ``ErrorRecord`` describing this failure."""
        return ErrorRecord(
            kind=self.kind,
            provider=provider or self.provider or "unknown",
            attempt=self.attempt if attempt is None else attempt,
            retryable=self.retryable,
            message=self.message,
        )


class NotConnectedError(VoiceProxyError):
    """Raised when a session operation needs an open provider connection."""


class AudioBufferOverflowError(VoiceProxyError):
    """Raised when buffered provider audio exceeds the configured bound."""


class UnknownProviderError(VoiceProxyError):
    """Raised for provider ids missing from the catalog."""


class UnsupportedProviderError(VoiceProxyError):
    """Raised for catalog providers registered without an adapter."""


class MissingCredentialError(VoiceProxyError):
    """Raised when a provider has no configured credential."""


class CapabilityMismatchError(VoiceProxyError):
    """Raised when a provider cannot serve the requested operation kind."""


class AllProvidersFailedError(VoiceProxyError):
    """Terminal router failure carrying the full attempt history."""

    def __init__(self, message: str, *, attempts: list[ErrorRecord], last_error: ErrorRecord | None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": str(self),
            "attempts": [record.to_dict() for record in self.attempts],
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }


_STATUS_KINDS = {
    401: ErrorKind.AUTHENTICATION,
    403: ErrorKind.AUTHORIZATION,
    404: ErrorKind.NOT_FOUND,
    408: ErrorKind.TIMEOUT,
    429: ErrorKind.RATE_LIMIT,
}

# Checked in order; first match wins.
_MESSAGE_KINDS: tuple[tuple[tuple[str, ...], ErrorKind], ...] = (
    (("timeout", "timed out"), ErrorKind.TIMEOUT),
    (("401", "unauthorized"), ErrorKind.AUTHENTICATION),
    (("403", "forbidden"), ErrorKind.AUTHORIZATION),
    (("404", "not found"), ErrorKind.NOT_FOUND),
    (("429", "rate limit"), ErrorKind.RATE_LIMIT),
    (("500", "502", "503", "504"), ErrorKind.SERVER_ERROR),
    (("enotfound", "econnrefused", "connection refused", "name or service not known"), ErrorKind.NETWORK),
    (("json", "parse"), ErrorKind.PARSE_ERROR),
)


def kind_for_status(status_code: int) -> ErrorKind:
    """Maps an upstream HTTP status code to an ``ErrorKind``."""
    if status_code in _STATUS_KINDS:
        return _STATUS_KINDS[status_code]
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.UNKNOWN


def kind_for_message(message: str) -> ErrorKind:
    """Infers an ``ErrorKind`` from free-form upstream error text."""
    lowered = message.lower()
    for needles, kind in _MESSAGE_KINDS:
        if any(needle in lowered for needle in needles):
            return kind
    return ErrorKind.UNKNOWN


def classify_error(exc: BaseException, *, provider: str | None = None, attempt: int = 0) -> ProviderError:
    """Normalizes any exception raised by a provider call into ``ProviderError``.

    Args:
        exc: Exception raised by an adapter or operation.
        provider: Provider id the call ran against.
        attempt: Attempt number used for the resulting record.

    Returns:
        A ``ProviderError`` carrying the inferred kind. Already-classified
        errors keep their kind and are re-tagged with provider/attempt.
    """
    if isinstance(exc, ProviderError):
        exc.provider = exc.provider or provider
        exc.attempt = attempt
        return exc

    message = str(exc) or type(exc).__name__
    status_code: int | None = None

    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        kind = kind_for_status(status_code)
    elif isinstance(exc, InvalidStatus):
        status_code = exc.response.status_code
        kind = kind_for_status(status_code)
    elif isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        kind = ErrorKind.TIMEOUT
    elif isinstance(exc, (httpx.TransportError, ConnectionError, OSError)):
        kind = ErrorKind.NETWORK
    elif isinstance(exc, json.JSONDecodeError):
        kind = ErrorKind.PARSE_ERROR
    elif isinstance(exc, MissingCredentialError):
        kind = ErrorKind.AUTHENTICATION
    elif isinstance(exc, (UnknownProviderError, UnsupportedProviderError, CapabilityMismatchError)):
        kind = ErrorKind.NOT_FOUND
    else:
        kind = kind_for_message(message)

    return ProviderError(message, kind=kind, provider=provider, attempt=attempt, status_code=status_code)
