"""Per-client realtime session relaying audio between a client and a provider.

The session owns exactly one upstream ``RealtimeProvider`` connection. Client
messages and provider events are put on a single queue and applied by one
consumer task, so session state is only ever mutated from that task.
"""

from __future__ import annotations

import asyncio
import binascii
import contextlib
import logging
import uuid
from collections.abc import Sequence
from typing import Any

from ..audio import AudioOutputBuffer, encode_pcm16
from ..config import settings
from ..errors import AudioBufferOverflowError, NotConnectedError, classify_error
from ..providers.base import RealtimeProvider
from ..providers.types import ProviderEvent, ProviderSessionInfo, SessionConfig, TurnDetection
from .types import ACTIVE_STATES, TERMINAL_STATES, ClientMessage, ClientSender, SessionState

_LOGGER = logging.getLogger(__name__)

_CLIENT = "client"
_PROVIDER = "provider"
_PROVIDER_CLOSED = "provider_closed"

# Speech lifecycle events: event name -> (source states, target state).
_SPEECH_TRANSITIONS = {
    "speech_started": (frozenset({SessionState.CONFIGURED, SessionState.IDLE}), SessionState.LISTENING),
    "speech_stopped": (frozenset({SessionState.LISTENING}), SessionState.PROCESSING),
}

# Provider events handled while the session is not yet configured.
_PRE_CONFIGURED_EVENTS = frozenset({"session_ready", "provider_error"})


def default_session_config() -> SessionConfig:
    """Builds the realtime session configuration from runtime settings."""
    turn_detection = None
    if settings.TURN_DETECTION_TYPE and settings.TURN_DETECTION_TYPE != "none":
        turn_detection = TurnDetection(
            type=settings.TURN_DETECTION_TYPE,
            threshold=settings.TURN_DETECTION_THRESHOLD,
            prefix_padding_ms=settings.TURN_DETECTION_PREFIX_PADDING_MS,
            silence_duration_ms=settings.TURN_DETECTION_SILENCE_MS,
        )
    return SessionConfig(
        instructions=settings.REALTIME_INSTRUCTIONS,
        voice=settings.REALTIME_VOICE,
        transcription_model=settings.REALTIME_TRANSCRIPTION_MODEL or None,
        turn_detection=turn_detection,
        temperature=settings.REALTIME_TEMPERATURE,
        max_output_tokens=settings.REALTIME_MAX_OUTPUT_TOKENS,
    )


class RealtimeProxySession:
    """Relays one client's audio stream through a realtime provider.

    Usage pattern:
    1. ``start()`` connects upstream and starts the consumer and provider pump.
    2. ``handle_client_message()`` queues parsed client messages.
    3. ``wait_until_done()`` resolves once the session has failed or closed.
    4. ``close()`` is called in a ``finally`` block to release the provider.

    Provider audio deltas are buffered as base64 text and decoded only when the
    provider signals the end of the audio for a response, producing exactly
    one ``audio_output`` message per completed audio part.
    """

    def __init__(
        self,
        *,
        provider: RealtimeProvider,
        config: SessionConfig | None = None,
        session_id: str | None = None,
        max_output_bytes: int | None = None,
    ) -> None:
        """Initializes session state without touching the network.

        Args:
            provider: Realtime provider adapter owned by this session.
            config: Configuration sent once the provider reports ready.
            session_id: Opaque session token, generated when omitted.
            max_output_bytes: Bound on buffered output audio per response.
        """
        self.session_id = session_id or uuid.uuid4().hex
        self.provider_info: ProviderSessionInfo | None = None
        self._provider = provider
        self._config = config or default_session_config()
        self._output = AudioOutputBuffer(
            max_bytes=max_output_bytes if max_output_bytes is not None else settings.AUDIO_OUTPUT_MAX_BYTES
        )
        self._discarding_output = False

        self._state = SessionState.INIT
        self._send_to_client: ClientSender | None = None
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self._done = asyncio.Event()
        self._closing = False

        self._connect_task: asyncio.Task[ProviderSessionInfo] | None = None
        self._consumer_task: asyncio.Task[None] | None = None
        self._provider_pump_task: asyncio.Task[None] | None = None

        self._input_audio_chunks = 0
        self._input_audio_samples = 0
        self._output_audio_messages = 0
        self._output_audio_samples = 0
        self._provider_event_counts: dict[str, int] = {}

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pending_output_fragments(self) -> int:
        """Number of provider audio fragments awaiting the end of a response."""
        return len(self._output)

    async def start(self, *, send_to_client: ClientSender) -> None:
        """Connects upstream and starts session background tasks.

        Connection failures are reported to the client and end the session;
        they are not raised to the caller.
        """
        if self._state is not SessionState.INIT:
            _LOGGER.debug("RealtimeProxySession.start() called after startup; ignoring.")
            return

        self._send_to_client = send_to_client
        self._state = SessionState.CONNECTING
        self._consumer_task = asyncio.create_task(self._consume_loop())
        self._connect_task = asyncio.create_task(self._provider.connect())
        try:
            self.provider_info = await self._connect_task
        except asyncio.CancelledError:
            if self._closing:
                _LOGGER.debug("Provider connect cancelled by session close.", extra={"session_id": self.session_id})
                return
            raise
        except Exception as exc:
            error = classify_error(exc, provider=getattr(self._provider, "provider_name", None))
            await self._fail(f"Failed to connect to provider: {error.message}")
            return
        finally:
            self._connect_task = None

        if self._closing:
            return
        self._provider_pump_task = asyncio.create_task(self._provider_pump())
        _LOGGER.info(
            "Realtime session connected.",
            extra={
                "session_id": self.session_id,
                "provider_name": self.provider_info.provider_name,
                "model_name": self.provider_info.model_name,
            },
        )

    async def handle_client_message(self, message: ClientMessage) -> bool:
        """Queues one parsed client message for the session consumer.

        Returns:
            ``True`` while the session accepts input, otherwise ``False``.
        """
        if self._state in TERMINAL_STATES or self._closing:
            return False
        await self._queue.put((_CLIENT, message))
        return True

    async def submit_audio_chunk(self, samples: Sequence[int]) -> None:
        """Forwards int16 caller samples to the provider input buffer.

        Audio arriving before the provider session is configured, or after the
        connection ended, is dropped.

        Raises:
            ValueError: If a sample is not a 16-bit signed integer.
        """
        if self._state not in ACTIVE_STATES or not self._provider.is_connected:
            _LOGGER.debug(
                "Dropping client audio; session not ready.",
                extra={"session_id": self.session_id, "state": self._state.value},
            )
            return
        audio_b64 = encode_pcm16(samples)
        await self._provider.append_audio(audio_b64)
        self._input_audio_chunks += 1
        self._input_audio_samples += len(samples)

    async def commit_audio(self) -> None:
        """Commits the provider input buffer without requesting a response.

        Raises:
            NotConnectedError: If no provider connection is open.
        """
        self._require_connected()
        await self._provider.commit_audio()

    async def commit_and_respond(self) -> None:
        """Commits buffered caller audio and asks the provider to respond.

        Raises:
            NotConnectedError: If no provider connection is open.
        """
        self._require_connected()
        await self._provider.commit_audio()
        await self._provider.request_response()

    async def wait_until_done(self) -> None:
        """Blocks until the session has failed or been closed."""
        await self._done.wait()

    async def close(self) -> None:
        """Idempotently tears down tasks and the provider connection."""
        if self._closing:
            return
        self._closing = True
        self._state = SessionState.CLOSED
        await self._teardown()
        self._log_session_summary()
        self._send_to_client = None

    async def _teardown(self) -> None:
        """Cancels session tasks and closes the provider connection."""
        await self._cancel_task(self._connect_task)
        await self._cancel_task(self._provider_pump_task)
        await self._cancel_task(self._consumer_task)

        with contextlib.suppress(Exception):
            await self._provider.close()

        self._output.clear()
        self._done.set()

    async def _cancel_task(self, task: asyncio.Task[Any] | None) -> None:
        """Cancels and drains one task if active."""
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if task and task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

    async def _provider_pump(self) -> None:
        """Moves provider events onto the session queue."""
        try:
            async for event in self._provider.events():
                await self._queue.put((_PROVIDER, event))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            _LOGGER.warning(
                "Provider event stream failed.",
                extra={"session_id": self.session_id, "error": str(exc)},
            )
            await self._queue.put((_PROVIDER_CLOSED, exc))
            return
        await self._queue.put((_PROVIDER_CLOSED, None))

    async def _consume_loop(self) -> None:
        """Applies queued client messages and provider events in order."""
        try:
            while self._state not in TERMINAL_STATES:
                source, payload = await self._queue.get()
                if source == _CLIENT:
                    await self._handle_client_message(payload)
                elif source == _PROVIDER:
                    await self._handle_provider_event(payload)
                else:
                    await self._handle_provider_closed(payload)
        except asyncio.CancelledError:
            raise
        except Exception:
            _LOGGER.exception("Session event loop failed.", extra={"session_id": self.session_id})
            await self._fail("Internal session error")

    async def _handle_client_message(self, message: ClientMessage) -> None:
        """Dispatches one client message by its ``type`` field."""
        message_type = message.get("type")
        if message_type == "audio_input":
            data = message.get("data")
            if not isinstance(data, list):
                await self._emit({"type": "error", "message": "audio_input data must be an array of int16 samples"})
                return
            try:
                await self.submit_audio_chunk(data)
            except ValueError as exc:
                await self._emit({"type": "error", "message": str(exc)})
            return

        if message_type in ("commit_audio", "stop_audio"):
            try:
                if message_type == "commit_audio":
                    await self.commit_and_respond()
                else:
                    await self.commit_audio()
            except NotConnectedError as exc:
                await self._emit({"type": "error", "message": str(exc)})
            return

        _LOGGER.info("Ignoring unknown client message type.", extra={"message_type": message_type})

    async def _handle_provider_event(self, event: ProviderEvent) -> None:
        """Applies one normalized provider event to session state."""
        name = event.event_name
        self._provider_event_counts[name] = self._provider_event_counts.get(name, 0) + 1

        if self._state not in ACTIVE_STATES and name not in _PRE_CONFIGURED_EVENTS:
            _LOGGER.debug(
                "Ignoring provider event before session is configured.",
                extra={"session_id": self.session_id, "event_name": name, "state": self._state.value},
            )
            return

        if name == "session_ready":
            if self._state is SessionState.CONNECTING:
                await self._provider.configure(self._config)
                self._state = SessionState.CONFIGURED
                await self._emit({"type": "connected", "session_id": self.session_id})
            return

        if name in _SPEECH_TRANSITIONS:
            sources, target = _SPEECH_TRANSITIONS[name]
            if self._state in sources:
                self._state = target
            else:
                _LOGGER.debug(
                    "Speech event outside its source states; state unchanged.",
                    extra={"session_id": self.session_id, "event_name": name, "state": self._state.value},
                )
            await self._emit({"type": name})
            return

        if name == "transcript_input":
            await self._emit({"type": "transcript_input", "transcript": event.transcript or ""})
            return

        if name == "audio_delta":
            await self._buffer_output(event.audio_fragment or "")
            return

        if name == "audio_done":
            await self._flush_output()
            if self._state is SessionState.PROCESSING:
                self._state = SessionState.RESPONDING
            return

        if name == "response_done":
            if self._output:
                _LOGGER.warning(
                    "Discarding unflushed output audio at response end.",
                    extra={"session_id": self.session_id, "fragments": len(self._output)},
                )
                self._output.clear()
            self._discarding_output = False
            self._state = SessionState.IDLE
            await self._emit({"type": "response_complete"})
            return

        if name == "provider_error":
            await self._fail(event.error_message or "Provider error")
            return

        if settings.VERBOSE_PROVIDER_EVENTS:
            _LOGGER.debug(
                "Unhandled provider event.",
                extra={"event_name": name, "external_event_type": event.external_event_type},
            )

    async def _buffer_output(self, fragment: str) -> None:
        """Appends one output fragment, dropping the turn's audio on overflow."""
        if self._state in (SessionState.CONFIGURED, SessionState.LISTENING, SessionState.IDLE):
            self._state = SessionState.PROCESSING
        if self._discarding_output:
            return
        try:
            self._output.append(fragment)
        except AudioBufferOverflowError as exc:
            _LOGGER.warning(
                "Output audio buffer overflow; discarding response audio.",
                extra={"session_id": self.session_id, "buffered": self._output.size},
            )
            self._output.clear()
            self._discarding_output = True
            await self._emit({"type": "error", "message": str(exc)})

    async def _flush_output(self) -> None:
        """Decodes buffered fragments and emits one ``audio_output`` message."""
        if self._discarding_output:
            self._discarding_output = False
            return
        if not self._output:
            return
        try:
            samples = self._output.flush()
        except (binascii.Error, ValueError):
            _LOGGER.warning("Provider audio was not valid base64.", extra={"session_id": self.session_id})
            await self._emit({"type": "error", "message": "Invalid audio data from provider"})
            return
        self._output_audio_messages += 1
        self._output_audio_samples += len(samples)
        await self._emit({"type": "audio_output", "data": samples})

    async def _handle_provider_closed(self, error: BaseException | None) -> None:
        if self._closing:
            return
        if error is None:
            await self._fail("Provider connection closed")
        else:
            await self._fail(f"Provider connection lost: {error}")

    async def _fail(self, message: str) -> None:
        """Moves the session to ERROR, tells the client and tears down."""
        if self._state in TERMINAL_STATES:
            return
        self._state = SessionState.ERROR
        _LOGGER.warning("Realtime session failed.", extra={"session_id": self.session_id, "error": message})
        with contextlib.suppress(Exception):
            await self._emit({"type": "error", "message": message})
        await self._teardown()

    async def _emit(self, payload: dict[str, Any]) -> None:
        """Sends one message through the registered client callback."""
        if not self._send_to_client:
            return
        await self._send_to_client(payload)

    def _require_connected(self) -> None:
        if self._state in TERMINAL_STATES or not self._provider.is_connected:
            raise NotConnectedError("Not connected to realtime provider")

    def _log_session_summary(self) -> None:
        """Logs one compact end-of-session summary for diagnostics."""
        _LOGGER.debug(
            "Session summary session_id=%s in_chunks=%d in_samples=%d out_messages=%d out_samples=%d",
            self.session_id,
            self._input_audio_chunks,
            self._input_audio_samples,
            self._output_audio_messages,
            self._output_audio_samples,
        )
        if self._provider_event_counts:
            _LOGGER.debug(
                "Session provider event counts session_id=%s counts=%s",
                self.session_id,
                self._provider_event_counts,
            )
