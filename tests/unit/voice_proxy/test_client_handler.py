from __future__ import annotations

import asyncio
import json

from starlette.websockets import WebSocketState

from voice_proxy.app.providers.types import ProviderEvent, ProviderSessionInfo, SessionConfig
from voice_proxy.app.session.realtime_session import RealtimeProxySession
from voice_proxy.app.session.types import SessionState
from voice_proxy.app.ws.client_handler import ClientStreamHandler


def run(coro):
    return asyncio.run(coro)


class _FakeWebSocket:
    def __init__(self) -> None:
        self._incoming: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        self.sent_texts: list[str] = []
        self.accepted = False
        self.closed = False
        self.client_state = WebSocketState.CONNECTED

    def feed(self, *messages: str | bytes | None) -> None:
        for message in messages:
            self._incoming.put_nowait(message)

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, text: str) -> None:
        self.sent_texts.append(text)

    async def receive(self) -> dict[str, object]:
        message = await self._incoming.get()
        if message is None:
            self.client_state = WebSocketState.DISCONNECTED
            return {"type": "websocket.disconnect", "code": 1000}
        if isinstance(message, bytes):
            return {"type": "websocket.receive", "bytes": message}
        return {"type": "websocket.receive", "text": message}

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        del code, reason
        self.closed = True
        self.client_state = WebSocketState.DISCONNECTED

    def sent_payloads(self) -> list[dict[str, object]]:
        return [json.loads(text) for text in self.sent_texts]


class _FakeRealtimeProvider:
    provider_name = "fake-realtime"

    def __init__(self) -> None:
        self.connected = False
        self.closed = False
        self.appended: list[str] = []
        self._events: asyncio.Queue[ProviderEvent | None] = asyncio.Queue()

    @property
    def is_connected(self) -> bool:
        return self.connected and not self.closed

    async def connect(self) -> ProviderSessionInfo:
        self.connected = True
        return ProviderSessionInfo(provider_name=self.provider_name)

    async def configure(self, config: SessionConfig) -> None:
        del config

    async def append_audio(self, audio_b64: str) -> None:
        self.appended.append(audio_b64)

    async def commit_audio(self) -> None:
        return None

    async def request_response(self) -> None:
        return None

    async def events(self):
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        self.closed = True

    def push(self, event_name: str, **kwargs: object) -> None:
        self._events.put_nowait(ProviderEvent(event_name=event_name, provider_name=self.provider_name, **kwargs))


def test_invalid_and_binary_frames_are_reported_and_disconnect_tears_down() -> None:
    async def scenario() -> None:
        websocket = _FakeWebSocket()
        provider = _FakeRealtimeProvider()
        session = RealtimeProxySession(provider=provider, config=SessionConfig())
        handler = ClientStreamHandler(websocket, session=session)  # type: ignore[arg-type]

        websocket.feed("not json", b"\x00\x01", "[1, 2]", None)
        await handler.start()
        await asyncio.wait_for(handler.wait_until_done(), timeout=1)

        assert websocket.accepted is True
        errors = [payload for payload in websocket.sent_payloads() if payload["type"] == "error"]
        assert errors == [
            {"type": "error", "message": "Invalid message format"},
            {"type": "error", "message": "Invalid message format"},
            {"type": "error", "message": "Invalid message format"},
        ]
        assert session.state is SessionState.CLOSED
        assert provider.closed is True

    run(scenario())


def test_audio_is_relayed_after_session_is_configured() -> None:
    async def scenario() -> None:
        websocket = _FakeWebSocket()
        provider = _FakeRealtimeProvider()
        session = RealtimeProxySession(provider=provider, config=SessionConfig())
        handler = ClientStreamHandler(websocket, session=session)  # type: ignore[arg-type]

        await handler.start()
        provider.push("session_ready")
        for _ in range(100):
            if session.state is SessionState.CONFIGURED:
                break
            await asyncio.sleep(0)

        websocket.feed(json.dumps({"type": "audio_input", "data": [1, -1]}))
        for _ in range(100):
            if provider.appended:
                break
            await asyncio.sleep(0)
        websocket.feed(None)
        await asyncio.wait_for(handler.wait_until_done(), timeout=1)

        assert provider.appended == ["AQD//w=="]
        assert websocket.sent_payloads()[0]["type"] == "connected"

    run(scenario())


def test_session_failure_closes_client_websocket() -> None:
    async def scenario() -> None:
        websocket = _FakeWebSocket()
        provider = _FakeRealtimeProvider()
        session = RealtimeProxySession(provider=provider, config=SessionConfig())
        handler = ClientStreamHandler(websocket, session=session)  # type: ignore[arg-type]

        await handler.start()
        provider.push("provider_error", error_message="upstream exploded")
        await asyncio.wait_for(handler.wait_until_done(), timeout=1)

        assert {"type": "error", "message": "upstream exploded"} in websocket.sent_payloads()
        assert websocket.closed is True
        assert provider.closed is True

    run(scenario())


def test_shutdown_is_idempotent() -> None:
    async def scenario() -> None:
        websocket = _FakeWebSocket()
        session = RealtimeProxySession(provider=_FakeRealtimeProvider(), config=SessionConfig())
        handler = ClientStreamHandler(websocket, session=session)  # type: ignore[arg-type]

        await handler.start()
        await handler.shutdown()
        await handler.shutdown()

        assert websocket.closed is True
        assert session.state is SessionState.CLOSED

    run(scenario())
