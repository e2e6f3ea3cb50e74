"""Client websocket bridge for realtime proxy sessions.

Translates client websocket text frames into session messages and session
output back into JSON frames. Session state lives in ``RealtimeProxySession``;
this module only owns the transport lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from ..session.realtime_session import RealtimeProxySession

_LOGGER = logging.getLogger(__name__)


class ClientStreamHandler:
    """Coordinates one client websocket with one realtime proxy session.

    Usage pattern:
    1. ``main.py`` creates one ``ClientStreamHandler`` per websocket connection.
    2. ``start()`` accepts the websocket and starts the session and the
       client message loop.
    3. ``wait_until_done()`` blocks until the client leaves or the session ends.
    4. ``shutdown()`` is called in a ``finally`` block to release resources.
    """

    def __init__(self, websocket: WebSocket, *, session: RealtimeProxySession):
        """Initializes per-connection state.

        Args:
            websocket: Active client websocket connection.
            session: Session relaying this client's audio.
        """
        self.websocket = websocket
        self.session = session

        self._session_start_task: asyncio.Task[None] | None = None
        self._session_done_task: asyncio.Task[None] | None = None
        self._message_loop_task: asyncio.Task[None] | None = None

        self._is_shutting_down = False
        self._received_count = 0
        self._sent_count = 0
        client = getattr(websocket, "client", None)
        _LOGGER.debug(
            "ClientStreamHandler initialized.",
            extra={"client": str(client), "session_id": session.session_id},
        )

    async def start(self) -> None:
        """Accepts the websocket and starts session and message loops."""
        await self.websocket.accept()
        _LOGGER.debug("Client websocket accepted.", extra={"session_id": self.session.session_id})

        # Session connect runs concurrently so a client disconnect can cancel it.
        self._session_start_task = asyncio.create_task(self.session.start(send_to_client=self._send_json))
        self._session_done_task = asyncio.create_task(self.session.wait_until_done())
        self._message_loop_task = asyncio.create_task(self._client_message_loop())

    async def wait_until_done(self) -> None:
        """Waits until the client disconnects or the session ends.

        Always calls ``shutdown()`` before returning.
        """
        if not self._message_loop_task or not self._session_done_task:
            _LOGGER.debug("ClientStreamHandler.wait_until_done() called before start; returning early.")
            return
        try:
            await asyncio.wait(
                {self._message_loop_task, self._session_done_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Idempotently closes the session, background tasks and websocket."""
        if self._is_shutting_down:
            return
        self._is_shutting_down = True
        _LOGGER.debug(
            "ClientStreamHandler shutdown started.",
            extra={
                "session_id": self.session.session_id,
                "received": self._received_count,
                "sent": self._sent_count,
            },
        )

        # Closing the session first cancels any in-flight provider connect.
        with contextlib.suppress(Exception):
            await self.session.close()

        await self._cancel_background_tasks()

        if self.websocket.client_state != WebSocketState.DISCONNECTED:
            with contextlib.suppress(Exception):
                await self.websocket.close()
        _LOGGER.debug("ClientStreamHandler shutdown completed.", extra={"session_id": self.session.session_id})

    async def _cancel_background_tasks(self) -> None:
        """Cancels and awaits all handler-owned background tasks."""
        current = asyncio.current_task()
        tasks = [self._session_start_task, self._session_done_task, self._message_loop_task]
        for task in tasks:
            if task and task is not current and not task.done():
                task.cancel()
        for task in tasks:
            if task and task is not current:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task

    async def _client_message_loop(self) -> None:
        """Consumes client websocket messages until the connection ends."""
        try:
            while not self._is_shutting_down:
                frame = await self.websocket.receive()
                if frame.get("type") == "websocket.disconnect":
                    _LOGGER.info("Client websocket disconnected.", extra={"session_id": self.session.session_id})
                    break
                self._received_count += 1
                message_text = frame.get("text")
                if message_text is None:
                    _LOGGER.warning("Received non-text frame from client.")
                    await self._send_json({"type": "error", "message": "Invalid message format"})
                    continue
                try:
                    message = json.loads(message_text)
                except json.JSONDecodeError:
                    _LOGGER.warning("Received non-JSON message from client.")
                    await self._send_json({"type": "error", "message": "Invalid message format"})
                    continue
                if not isinstance(message, dict):
                    await self._send_json({"type": "error", "message": "Invalid message format"})
                    continue
                if not await self.session.handle_client_message(message):
                    break
        except asyncio.CancelledError:
            raise
        except WebSocketDisconnect:
            _LOGGER.info("Client websocket disconnected.", extra={"session_id": self.session.session_id})
        except Exception:
            _LOGGER.exception("Client message loop failed.", extra={"session_id": self.session.session_id})

    async def _send_json(self, payload: dict[str, Any]) -> None:
        """Serializes and sends one JSON message to the client."""
        if self.websocket.client_state == WebSocketState.DISCONNECTED:
            return
        self._sent_count += 1
        if payload.get("type") != "audio_output":
            _LOGGER.debug("Sending client message.", extra={"message_type": payload.get("type")})
        await self.websocket.send_text(json.dumps(payload))
