"""Lobby state, rules and lifecycle.

Only the data models are re-exported here; import the controller and the
stateful services from their modules.
"""

from fitlobby.lobby.models import (
    ChatMessage,
    ConnectionMode,
    CurrentUser,
    LobbySession,
    Member,
    MemberStatus,
    PendingInvite,
    SessionStatus,
    WorkoutData,
)

__all__ = [
    "ChatMessage",
    "ConnectionMode",
    "CurrentUser",
    "LobbySession",
    "Member",
    "MemberStatus",
    "PendingInvite",
    "SessionStatus",
    "WorkoutData",
]
