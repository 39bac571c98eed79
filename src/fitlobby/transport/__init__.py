"""Lobby event transports (push channel, polling fallback, hybrid manager)."""

from fitlobby.transport.events import LobbyEvent, parse_lobby_event
from fitlobby.transport.manager import TransportConfig, TransportManager
from fitlobby.transport.polling import PollingConfig, PollingTransport
from fitlobby.transport.push import PushClient, PushState

__all__ = [
    "LobbyEvent",
    "PollingConfig",
    "PollingTransport",
    "PushClient",
    "PushState",
    "TransportConfig",
    "TransportManager",
    "parse_lobby_event",
]
