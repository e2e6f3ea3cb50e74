from __future__ import annotations

import asyncio
from typing import Any

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from voice_proxy.app.errors import ErrorKind, ProviderError
from voice_proxy.app.main import create_app
from voice_proxy.app.providers.registry import DEFAULT_FACTORIES, ProviderRegistry
from voice_proxy.app.providers.types import (
    ProviderEvent,
    ProviderSessionInfo,
    ProviderSpec,
    SessionConfig,
    TranscriptEvent,
)
from voice_proxy.app.routing.health import ProviderHealthRegistry
from voice_proxy.app.routing.router import ResilientRouter


async def _no_sleep(_seconds: float) -> None:
    return None


class _FakeSynthesizer:
    def __init__(self, outcomes: list[Any], calls: list[dict[str, Any]]) -> None:
        self._outcomes = outcomes
        self._calls = calls
        self.closed = False

    async def synthesize(self, text: str, **options: Any) -> bytes:
        self._calls.append({"text": text, **options})
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self) -> None:
        self.closed = True


class _FakeTranscriber:
    def __init__(self, calls: list[dict[str, Any]]) -> None:
        self._calls = calls

    async def transcribe(self, audio: bytes, **options: Any) -> dict[str, Any]:
        self._calls.append({"audio": audio, **options})
        return {"text": "tee time at nine"}

    async def close(self) -> None:
        return None


class _FakeStreamingTranscriber:
    """Emits one final transcript per audio frame."""

    provider_name = "deepgram"

    def __init__(self, options: dict[str, Any]) -> None:
        self.options = options
        self.audio: list[bytes] = []
        self.closed = False
        self._transcripts: asyncio.Queue[TranscriptEvent] = asyncio.Queue()

    async def connect(self) -> None:
        return None

    async def send_audio(self, audio_bytes: bytes) -> None:
        self.audio.append(audio_bytes)
        self._transcripts.put_nowait(TranscriptEvent(provider_name=self.provider_name, text="tee time", is_final=True))

    async def transcripts(self):
        while True:
            yield await self._transcripts.get()

    async def close(self) -> None:
        self.closed = True


class _FakeRealtimeProvider:
    """Answers every response request with one audio turn."""

    provider_name = "openai-realtime"

    def __init__(self) -> None:
        self.appended: list[str] = []
        self.closed = False
        self._events: asyncio.Queue[ProviderEvent] | None = None

    @property
    def is_connected(self) -> bool:
        return self._events is not None and not self.closed

    async def connect(self) -> ProviderSessionInfo:
        self._events = asyncio.Queue()
        self._push("session_ready")
        return ProviderSessionInfo(provider_name=self.provider_name)

    async def configure(self, config: SessionConfig) -> None:
        del config

    async def append_audio(self, audio_b64: str) -> None:
        self.appended.append(audio_b64)

    async def commit_audio(self) -> None:
        return None

    async def request_response(self) -> None:
        self._push("audio_delta", audio_fragment="AQD//w==")
        self._push("audio_done")
        self._push("response_done")

    async def events(self):
        assert self._events is not None
        while True:
            yield await self._events.get()

    async def close(self) -> None:
        self.closed = True

    def _push(self, event_name: str, **kwargs: Any) -> None:
        assert self._events is not None
        self._events.put_nowait(ProviderEvent(event_name=event_name, provider_name=self.provider_name, **kwargs))


class _Harness:
    def __init__(self, tts_outcomes: list[Any] | None = None) -> None:
        self.tts_outcomes = list(tts_outcomes or [b"ID3-audio"])
        self.tts_calls: list[dict[str, Any]] = []
        self.stt_calls: list[dict[str, Any]] = []
        self.realtime: list[_FakeRealtimeProvider] = []
        self.streaming: list[_FakeStreamingTranscriber] = []

        def synthesizer_factory(spec: ProviderSpec, credential: str, options: dict[str, Any]) -> _FakeSynthesizer:
            del spec, credential, options
            return _FakeSynthesizer(self.tts_outcomes, self.tts_calls)

        def transcriber_factory(spec: ProviderSpec, credential: str, options: dict[str, Any]) -> _FakeTranscriber:
            del spec, credential, options
            return _FakeTranscriber(self.stt_calls)

        def realtime_factory(spec: ProviderSpec, credential: str, options: dict[str, Any]) -> _FakeRealtimeProvider:
            del spec, credential, options
            provider = _FakeRealtimeProvider()
            self.realtime.append(provider)
            return provider

        def streaming_factory(spec: ProviderSpec, credential: str, options: dict[str, Any]) -> _FakeStreamingTranscriber:
            del spec, credential
            transcriber = _FakeStreamingTranscriber(options)
            self.streaming.append(transcriber)
            return transcriber

        registry = ProviderRegistry(
            factories={
                **DEFAULT_FACTORIES,
                "elevenlabs": synthesizer_factory,
                "whisper": transcriber_factory,
                "openai-realtime": realtime_factory,
                "deepgram": streaming_factory,
            },
            credentials=lambda name: "key",
        )
        self.health = ProviderHealthRegistry(failure_threshold=5, cooldown_s=30.0)
        router = ResilientRouter(self.health, sleep=_no_sleep, jitter=lambda: 0.0, max_retries=3, timeout_ms=1000)
        self.client = TestClient(create_app(registry=registry, health=self.health, router=router, usage_sinks=()))


def test_health_endpoint() -> None:
    response = _Harness().client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "voice_proxy"}


def test_providers_endpoint_filters_and_validates() -> None:
    response = _Harness().client.get("/v1/providers", params={"kind": "tts"})

    assert response.status_code == 200
    by_id = {item["id"]: item for item in response.json()}
    assert by_id["elevenlabs"]["valid"] is True
    assert by_id["elevenlabs"]["implemented"] is True
    assert by_id["playht"]["valid"] is False
    assert "not yet implemented" in by_id["playht"]["error"]
    assert "whisper" not in by_id


def test_tts_returns_audio_with_provider_header() -> None:
    harness = _Harness()

    response = harness.client.post("/v1/tts", json={"text": "Hello", "voice_id": "voice-1"})

    assert response.status_code == 200
    assert response.content == b"ID3-audio"
    assert response.headers["content-type"] == "audio/mpeg"
    assert response.headers["x-provider"] == "elevenlabs"
    assert harness.tts_calls[0]["voice_id"] == "voice-1"


def test_tts_retries_retryable_failures() -> None:
    harness = _Harness(
        [
            ProviderError("upstream 503", kind=ErrorKind.SERVER_ERROR),
            ProviderError("upstream 503", kind=ErrorKind.SERVER_ERROR),
            b"audio",
        ]
    )

    response = harness.client.post("/v1/tts", json={"text": "Hello", "max_retries": 2})

    assert response.status_code == 200
    usage = harness.client.get("/v1/usage/elevenlabs").json()
    assert usage["total_requests"] == 3
    assert usage["total_errors"] == 2
    assert usage["error_types"] == {"SERVER_ERROR": 2}


def test_tts_exhaustion_returns_502_with_attempts() -> None:
    harness = _Harness([ProviderError("invalid api key", kind=ErrorKind.AUTHENTICATION)])

    response = harness.client.post("/v1/tts", json={"text": "Hello"})

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert len(detail["attempts"]) == 1
    assert detail["attempts"][0]["kind"] == "AUTHENTICATION"
    assert detail["last_error"]["provider"] == "elevenlabs"


def test_tts_healthy_primary_is_not_rejected_for_unbuildable_fallback() -> None:
    harness = _Harness()

    response = harness.client.post("/v1/tts", json={"text": "Hello", "fallback_providers": ["playht"]})

    assert response.status_code == 200
    assert response.headers["x-provider"] == "elevenlabs"


def test_tts_unbuildable_fallback_is_recorded_as_failed_attempt() -> None:
    harness = _Harness([ProviderError("invalid api key", kind=ErrorKind.AUTHENTICATION)])

    response = harness.client.post("/v1/tts", json={"text": "Hello", "fallback_providers": ["playht"]})

    assert response.status_code == 502
    attempts = response.json()["detail"]["attempts"]
    assert [(item["provider"], item["kind"]) for item in attempts] == [
        ("elevenlabs", "AUTHENTICATION"),
        ("playht", "NOT_FOUND"),
    ]
    assert attempts[1]["retryable"] is False
    assert len(harness.tts_calls) == 1


@pytest.mark.parametrize(
    ("payload", "status_code"),
    [
        ({"text": "Hello", "provider": "nope"}, 404),
        ({"text": "Hello", "provider": "playht"}, 400),
        ({"text": "Hello", "provider": "whisper"}, 400),
        ({"text": "Hello", "fallback_providers": ["nope"]}, 404),
        ({"text": "   "}, 422),
    ],
)
def test_tts_rejects_invalid_requests_before_calling(payload: dict[str, Any], status_code: int) -> None:
    harness = _Harness()

    response = harness.client.post("/v1/tts", json=payload)

    assert response.status_code == status_code
    assert harness.tts_calls == []


def test_stt_transcribes_raw_body() -> None:
    harness = _Harness()

    response = harness.client.post(
        "/v1/stt",
        params={"language": "fr"},
        content=b"RIFF-audio",
        headers={"content-type": "audio/wav"},
    )

    assert response.status_code == 200
    assert response.json() == {"provider": "whisper", "text": "tee time at nine"}
    assert harness.stt_calls[0]["audio"] == b"RIFF-audio"
    assert harness.stt_calls[0]["language"] == "fr"


def test_stt_rejects_empty_body_and_streaming_provider() -> None:
    harness = _Harness()

    assert harness.client.post("/v1/stt", content=b"").status_code == 400
    assert harness.client.post("/v1/stt", params={"provider": "deepgram"}, content=b"RIFF").status_code == 400
    assert harness.stt_calls == []


def test_breaker_reset_and_provider_health() -> None:
    harness = _Harness()
    breaker = harness.health.breaker("elevenlabs")
    for _ in range(5):
        breaker.record_failure()

    health = harness.client.get("/v1/providers/health").json()
    assert health["providers"]["elevenlabs"]["status"] == "down"
    assert health["status"] == "critical"

    response = harness.client.post("/v1/providers/elevenlabs/breaker/reset")
    assert response.status_code == 200
    assert response.json()["circuit_breaker"]["state"] == "CLOSED"
    assert harness.client.get("/v1/providers/health").json()["status"] == "healthy"

    assert harness.client.post("/v1/providers/nope/breaker/reset").status_code == 404
    assert harness.client.get("/v1/usage/nope").status_code == 404


def test_realtime_rejects_unknown_provider() -> None:
    harness = _Harness()

    with harness.client.websocket_connect("/v1/realtime?provider=nope") as websocket:
        error = websocket.receive_json()
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()

    assert error["type"] == "error"
    assert "nope" in error["message"]
    assert exc_info.value.code == 1008
    assert harness.realtime == []


def test_realtime_bridges_one_turn() -> None:
    harness = _Harness()

    with harness.client.websocket_connect("/v1/realtime") as websocket:
        assert websocket.receive_json()["type"] == "connected"
        websocket.send_json({"type": "audio_input", "data": [1, -1]})
        websocket.send_json({"type": "commit_audio"})
        assert websocket.receive_json() == {"type": "audio_output", "data": [1, -1]}
        assert websocket.receive_json() == {"type": "response_complete"}

    provider = harness.realtime[0]
    assert provider.appended == ["AQD//w=="]


def test_stt_stream_relays_binary_audio_to_streaming_provider() -> None:
    harness = _Harness()

    with harness.client.websocket_connect("/v1/stt/stream?language=fr") as websocket:
        assert websocket.receive_json() == {"type": "connected", "provider": "deepgram"}
        websocket.send_bytes(b"\x00\x01\x02\x03")
        assert websocket.receive_json() == {
            "type": "transcript",
            "text": "tee time",
            "is_final": True,
            "confidence": None,
        }

    transcriber = harness.streaming[0]
    assert transcriber.options["language"] == "fr"
    assert transcriber.audio == [b"\x00\x01\x02\x03"]
    assert transcriber.closed is True


def test_stt_stream_rejects_non_streaming_provider_after_accept() -> None:
    harness = _Harness()

    with harness.client.websocket_connect("/v1/stt/stream?provider=whisper") as websocket:
        error = websocket.receive_json()
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()

    assert error["type"] == "error"
    assert exc_info.value.code == 1008
    assert harness.streaming == []
