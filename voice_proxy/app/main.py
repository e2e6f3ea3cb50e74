"""FastAPI entrypoint for the realtime voice proxy.

This module performs four primary responsibilities:
1. Host the client websockets for realtime sessions and streaming STT.
2. Expose one-shot TTS/STT calls routed with retries and fallbacks.
3. Expose provider catalog, health and usage diagnostics.
4. Manage process-lifecycle resources such as the usage DB pool.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import Response

from .config import settings
from .errors import (
    AllProvidersFailedError,
    CapabilityMismatchError,
    MissingCredentialError,
    UnknownProviderError,
    UnsupportedProviderError,
    VoiceProxyError,
)
from .observability.usage_sink import DbUsageSink
from .providers.registry import ProviderRegistry
from .providers.types import AdapterVariant
from .routing.health import ProviderHealthRegistry, UsageSink
from .routing.router import ResilientRouter
from .schemas import BreakerResetResponse, ProviderSummary, TtsRequest
from .session.realtime_session import RealtimeProxySession, default_session_config
from .ws.client_handler import ClientStreamHandler
from .ws.transcription_handler import TranscriptionStreamHandler

_LOGGER = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Configures runtime log levels for the proxy and its transports."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    websockets_level = getattr(logging, settings.WEBSOCKETS_LOG_LEVEL.upper(), logging.INFO)
    httpx_level = getattr(logging, settings.HTTPX_LOG_LEVEL.upper(), logging.WARNING)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
    else:
        root_logger.setLevel(level)

    _LOGGER.setLevel(level)
    logging.getLogger("voice_proxy").setLevel(level)
    logging.getLogger("websockets").setLevel(websockets_level)
    logging.getLogger("websockets.client").setLevel(websockets_level)
    logging.getLogger("httpx").setLevel(httpx_level)
    _LOGGER.debug(
        "Logging configured for voice proxy.",
        extra={
            "log_level": settings.LOG_LEVEL,
            "websockets_log_level": settings.WEBSOCKETS_LOG_LEVEL,
            "httpx_log_level": settings.HTTPX_LOG_LEVEL,
        },
    )


@asynccontextmanager
async def _lifespan(app: FastAPI):
    """Initializes and tears down process-scoped resources."""
    usage_sink: DbUsageSink | None = app.state.db_usage_sink
    if usage_sink is not None:
        try:
            await usage_sink.start()
        except Exception:
            _LOGGER.exception("Failed to initialize usage DB pool.")
    try:
        yield
    finally:
        if usage_sink is not None:
            try:
                await usage_sink.close()
            except Exception:
                _LOGGER.exception("Failed to close usage DB pool.")


def _lookup_error_status(exc: VoiceProxyError) -> int:
    if isinstance(exc, UnknownProviderError):
        return status.HTTP_404_NOT_FOUND
    return status.HTTP_400_BAD_REQUEST


def create_app(
    *,
    registry: ProviderRegistry | None = None,
    health: ProviderHealthRegistry | None = None,
    router: ResilientRouter | None = None,
    usage_sinks: Sequence[UsageSink] | None = None,
) -> FastAPI:
    """Builds the proxy application around explicit process-scoped state.

    Args:
        registry: Provider catalog; defaults to the built-in catalog.
        health: Breaker and usage registry shared by every route.
        router: Router for one-shot calls; built from settings when omitted.
        usage_sinks: Extra usage sinks; a Postgres sink is added when
            ``DB_CONNECTION_STRING`` is set and none are given.

    Returns:
        Configured FastAPI application.
    """
    registry = registry or ProviderRegistry()
    health = health or ProviderHealthRegistry(
        failure_threshold=settings.BREAKER_FAILURE_THRESHOLD,
        cooldown_s=settings.BREAKER_COOLDOWN_S,
    )
    db_usage_sink = None
    if usage_sinks is None:
        db_usage_sink = DbUsageSink(settings.DB_CONNECTION_STRING) if settings.DB_CONNECTION_STRING else None
        usage_sinks = (db_usage_sink,) if db_usage_sink is not None else ()
    router = router or ResilientRouter(
        health,
        usage_sinks=usage_sinks,
        base_delay_ms=settings.ROUTER_BASE_DELAY_MS,
        delay_cap_ms=settings.ROUTER_DELAY_CAP_MS,
        max_retries=settings.ROUTER_MAX_RETRIES,
        timeout_ms=settings.ROUTER_TIMEOUT_MS,
    )

    app = FastAPI(title="voice_proxy", lifespan=_lifespan)
    app.state.registry = registry
    app.state.health = health
    app.state.router = router
    app.state.db_usage_sink = db_usage_sink

    def _resolve_chain(primary: str, fallbacks: Sequence[str], variant: AdapterVariant) -> None:
        """Validates the primary strictly and rejects unknown fallback ids.

        A known fallback that cannot build ``variant`` is left to the router,
        which records it as a failed non-retryable attempt.
        """
        try:
            registry.require(primary, variant)
        except (UnknownProviderError, UnsupportedProviderError, CapabilityMismatchError, MissingCredentialError) as exc:
            raise HTTPException(status_code=_lookup_error_status(exc), detail=str(exc)) from exc
        for fallback_id in fallbacks:
            if fallback_id not in registry:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider: {fallback_id}")

    @app.get("/health")
    async def liveness() -> dict[str, str]:
        """Returns a minimal liveness response."""
        return {"status": "ok", "service": "voice_proxy"}

    @app.get("/v1/providers", response_model=list[ProviderSummary])
    async def list_providers(kind: str | None = None) -> list[dict[str, Any]]:
        """Lists catalog providers, optionally filtered by kind or capability."""
        return [{**spec.to_dict(), **registry.validate(spec.provider_id)} for spec in registry.list_providers(kind)]

    @app.get("/v1/providers/health")
    async def providers_health() -> dict[str, Any]:
        return health.system_health()

    @app.post("/v1/providers/{provider}/breaker/reset", response_model=BreakerResetResponse)
    async def reset_breaker(provider: str) -> dict[str, Any]:
        """Forces a provider's circuit breaker back to CLOSED."""
        if provider not in registry:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider: {provider}")
        snapshot = health.reset_breaker(provider)
        return {"provider": provider, "circuit_breaker": snapshot}

    @app.get("/v1/usage")
    async def usage() -> dict[str, Any]:
        return health.usage()

    @app.get("/v1/usage/{provider}")
    async def provider_usage(provider: str) -> dict[str, Any]:
        if provider not in registry:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider: {provider}")
        return health.usage(provider)

    @app.post("/v1/tts")
    async def synthesize(body: TtsRequest) -> Response:
        """Synthesizes ``body.text`` through the router.

        Raises:
            HTTPException: 404/400 for invalid providers, 502 when every
                provider failed.
        """
        _resolve_chain(body.provider, body.fallback_providers, AdapterVariant.SYNTHESIZER)

        async def _synthesize(provider_id: str) -> tuple[str, bytes]:
            synthesizer = registry.create_synthesizer(provider_id)
            try:
                audio = await synthesizer.synthesize(
                    body.text,
                    voice_id=body.voice_id,
                    model=body.model,
                    stability=body.stability,
                    similarity_boost=body.similarity_boost,
                )
            finally:
                await synthesizer.close()
            return provider_id, audio

        try:
            provider_id, audio = await router.execute(
                _synthesize,
                provider=body.provider,
                fallback_providers=body.fallback_providers,
                max_retries=body.max_retries,
                timeout_ms=body.timeout_ms,
            )
        except AllProvidersFailedError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_dict()) from exc
        return Response(content=audio, media_type="audio/mpeg", headers={"X-Provider": provider_id})

    @app.post("/v1/stt")
    async def transcribe(
        request: Request,
        provider: str = "whisper",
        fallback: list[str] = Query(default=[]),
        model: str | None = None,
        language: str | None = None,
        max_retries: int | None = Query(default=None, ge=0, le=10),
        timeout_ms: int | None = Query(default=None, ge=1),
    ) -> dict[str, Any]:
        """Transcribes the raw request body through the router.

        Raises:
            HTTPException: 400 for an empty body or invalid providers, 404
                for unknown providers, 502 when every provider failed.
        """
        audio = await request.body()
        if not audio:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Audio body is required")
        _resolve_chain(provider, fallback, AdapterVariant.TRANSCRIBER)
        content_type = request.headers.get("content-type") or "audio/wav"

        async def _transcribe(provider_id: str) -> dict[str, Any]:
            transcriber = registry.create_transcriber(provider_id)
            try:
                result = await transcriber.transcribe(
                    audio,
                    model=model,
                    language=language,
                    content_type=content_type,
                )
            finally:
                await transcriber.close()
            return {"provider": provider_id, **result}

        try:
            return await router.execute(
                _transcribe,
                provider=provider,
                fallback_providers=fallback,
                max_retries=max_retries,
                timeout_ms=timeout_ms,
            )
        except AllProvidersFailedError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_dict()) from exc

    @app.websocket("/v1/realtime")
    async def realtime_stream(websocket: WebSocket) -> None:
        """Handles one client realtime websocket lifecycle."""
        provider_id = websocket.query_params.get("provider") or settings.DEFAULT_REALTIME_PROVIDER
        try:
            provider = registry.create_realtime(provider_id)
        except VoiceProxyError as exc:
            _LOGGER.info("Rejecting realtime websocket.", extra={"provider": provider_id, "error": str(exc)})
            await _reject_websocket(websocket, exc)
            return

        session = RealtimeProxySession(provider=provider, config=default_session_config())
        handler = ClientStreamHandler(websocket, session=session)
        try:
            await handler.start()
            await handler.wait_until_done()
        except WebSocketDisconnect:
            _LOGGER.info("Client websocket disconnected.")
        except Exception:
            _LOGGER.exception("Unhandled error while processing realtime stream.")
            raise
        finally:
            await handler.shutdown()

    @app.websocket("/v1/stt/stream")
    async def transcription_stream(websocket: WebSocket) -> None:
        """Streams binary client audio to a streaming STT provider."""
        params = websocket.query_params
        provider_id = params.get("provider") or "deepgram"
        try:
            transcriber = registry.create_streaming_transcriber(
                provider_id,
                model=params.get("model"),
                language=params.get("language"),
            )
        except VoiceProxyError as exc:
            _LOGGER.info("Rejecting transcription websocket.", extra={"provider": provider_id, "error": str(exc)})
            await _reject_websocket(websocket, exc)
            return

        handler = TranscriptionStreamHandler(websocket, transcriber=transcriber)
        try:
            await handler.run()
        except WebSocketDisconnect:
            _LOGGER.info("Transcription websocket disconnected.")
        except Exception:
            _LOGGER.exception("Unhandled error while processing transcription stream.")
            raise
        finally:
            await handler.shutdown()

    return app


async def _reject_websocket(websocket: WebSocket, exc: VoiceProxyError) -> None:
    """Accepts, reports the lookup error, then closes with a policy violation."""
    await websocket.accept()
    await websocket.send_json({"type": "error", "message": str(exc)})
    await websocket.close(code=1008, reason=str(exc)[:120])


_configure_logging()
app = create_app()


def run() -> None:
    """Serves the module-level app with uvicorn using configured bind settings."""
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
