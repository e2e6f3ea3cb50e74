"""Realtime proxy sessions bridging clients and realtime providers."""

from .realtime_session import RealtimeProxySession, default_session_config
from .types import ClientMessage, ClientSender, SessionState

__all__ = [
    "ClientMessage",
    "ClientSender",
    "RealtimeProxySession",
    "SessionState",
    "default_session_config",
]
