"""Shared type definitions for realtime proxy sessions."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Lifecycle states of one realtime proxy session."""

    INIT = "INIT"
    CONNECTING = "CONNECTING"
    CONFIGURED = "CONFIGURED"
    LISTENING = "LISTENING"
    PROCESSING = "PROCESSING"
    RESPONDING = "RESPONDING"
    IDLE = "IDLE"
    ERROR = "ERROR"
    CLOSED = "CLOSED"


# States in which the provider session has been configured and accepts audio.
ACTIVE_STATES = frozenset(
    {
        SessionState.CONFIGURED,
        SessionState.LISTENING,
        SessionState.PROCESSING,
        SessionState.RESPONDING,
        SessionState.IDLE,
    }
)

TERMINAL_STATES = frozenset({SessionState.ERROR, SessionState.CLOSED})

# Callback used by sessions to emit client-facing JSON messages.
ClientSender = Callable[[dict[str, Any]], Awaitable[None]]

# One parsed client websocket message.
ClientMessage = dict[str, Any]
