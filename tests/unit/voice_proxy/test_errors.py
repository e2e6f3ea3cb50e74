from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from voice_proxy.app.errors import (
    AllProvidersFailedError,
    CapabilityMismatchError,
    ErrorKind,
    MissingCredentialError,
    ProviderError,
    UnsupportedProviderError,
    classify_error,
    kind_for_message,
    kind_for_status,
)


@pytest.mark.parametrize(
    ("status_code", "kind"),
    [
        (401, ErrorKind.AUTHENTICATION),
        (403, ErrorKind.AUTHORIZATION),
        (404, ErrorKind.NOT_FOUND),
        (408, ErrorKind.TIMEOUT),
        (429, ErrorKind.RATE_LIMIT),
        (500, ErrorKind.SERVER_ERROR),
        (503, ErrorKind.SERVER_ERROR),
        (418, ErrorKind.UNKNOWN),
    ],
)
def test_kind_for_status(status_code: int, kind: ErrorKind) -> None:
    assert kind_for_status(status_code) is kind


@pytest.mark.parametrize(
    ("message", "kind"),
    [
        ("Request timed out", ErrorKind.TIMEOUT),
        ("401 Unauthorized", ErrorKind.AUTHENTICATION),
        ("Forbidden", ErrorKind.AUTHORIZATION),
        ("model not found", ErrorKind.NOT_FOUND),
        ("Rate limit reached", ErrorKind.RATE_LIMIT),
        ("upstream returned 502", ErrorKind.SERVER_ERROR),
        ("getaddrinfo ENOTFOUND api.example.com", ErrorKind.NETWORK),
        ("Unexpected token in JSON", ErrorKind.PARSE_ERROR),
        ("something odd", ErrorKind.UNKNOWN),
    ],
)
def test_kind_for_message(message: str, kind: ErrorKind) -> None:
    assert kind_for_message(message) is kind


def test_only_auth_and_not_found_kinds_are_non_retryable() -> None:
    non_retryable = {kind for kind in ErrorKind if not kind.retryable}

    assert non_retryable == {ErrorKind.AUTHENTICATION, ErrorKind.AUTHORIZATION, ErrorKind.NOT_FOUND}


def test_classify_http_status_error_uses_status_code() -> None:
    request = httpx.Request("POST", "https://api.example.com/v1/tts")
    response = httpx.Response(429, request=request)
    exc = httpx.HTTPStatusError("Too many requests", request=request, response=response)

    error = classify_error(exc, provider="elevenlabs", attempt=2)

    assert error.kind is ErrorKind.RATE_LIMIT
    assert error.status_code == 429
    assert error.provider == "elevenlabs"
    assert error.attempt == 2
    assert error.retryable is True


def test_classify_transport_and_timeout_errors() -> None:
    assert classify_error(asyncio.TimeoutError()).kind is ErrorKind.TIMEOUT
    assert classify_error(httpx.ReadTimeout("slow")).kind is ErrorKind.TIMEOUT
    assert classify_error(httpx.ConnectError("refused")).kind is ErrorKind.NETWORK
    assert classify_error(ConnectionResetError("reset")).kind is ErrorKind.NETWORK


def test_classify_json_decode_error() -> None:
    with pytest.raises(json.JSONDecodeError) as exc_info:
        json.loads("{")

    assert classify_error(exc_info.value).kind is ErrorKind.PARSE_ERROR


def test_classify_lookup_errors_as_non_retryable() -> None:
    missing = classify_error(MissingCredentialError("API key required"), provider="elevenlabs")
    unsupported = classify_error(UnsupportedProviderError("PlayHT adapter not yet implemented"), provider="playht")
    mismatch = classify_error(CapabilityMismatchError("not a synthesizer"), provider="whisper")

    assert missing.kind is ErrorKind.AUTHENTICATION
    assert unsupported.kind is ErrorKind.NOT_FOUND
    assert mismatch.kind is ErrorKind.NOT_FOUND
    assert not any(error.retryable for error in (missing, unsupported, mismatch))


def test_classify_falls_back_to_message_text() -> None:
    error = classify_error(RuntimeError("service returned 503"), provider="whisper")

    assert error.kind is ErrorKind.SERVER_ERROR
    assert error.message == "service returned 503"


def test_classify_keeps_existing_provider_error_kind() -> None:
    original = ProviderError("bad key", kind=ErrorKind.AUTHENTICATION)

    error = classify_error(original, provider="openai-realtime", attempt=1)

    assert error is original
    assert error.kind is ErrorKind.AUTHENTICATION
    assert error.provider == "openai-realtime"
    assert error.attempt == 1


def test_all_providers_failed_error_serializes_history() -> None:
    first = ProviderError("boom", kind=ErrorKind.SERVER_ERROR).to_record(provider="p1", attempt=0)
    second = ProviderError("slow", kind=ErrorKind.TIMEOUT).to_record(provider="p2", attempt=0)

    error = AllProvidersFailedError("All providers failed", attempts=[first, second], last_error=second)
    payload = error.to_dict()

    assert payload["message"] == "All providers failed"
    assert [item["provider"] for item in payload["attempts"]] == ["p1", "p2"]
    assert payload["last_error"]["kind"] == "TIMEOUT"
    assert payload["last_error"]["retryable"] is True
