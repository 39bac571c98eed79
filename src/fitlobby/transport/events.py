"""Typed events delivered by the lobby transports.

Push payloads arrive as ``(event_name, data)`` pairs; poll ticks arrive as a
full lobby state. Both are normalized into the ``LobbyEvent`` tagged union so
consumers can ``match`` on the concrete event class.
"""

import logging
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from fitlobby.lobby.models import ChatMessage, LobbySession, MemberStatus, WorkoutData

logger = logging.getLogger(__name__)


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class LobbyStateChanged(_Event):
    """Full authoritative lobby state; the only event that mutates state."""

    event: Literal["LobbyStateChanged"] = "LobbyStateChanged"
    session: LobbySession = Field(validation_alias=AliasChoices("session", "lobby_state"))


class MemberJoined(_Event):
    """A user joined the lobby (informational)."""

    event: Literal["MemberJoined"] = "MemberJoined"
    user_id: int = Field(validation_alias=AliasChoices("user_id", "userId"))
    user_name: str = Field(default="", validation_alias=AliasChoices("user_name", "userName"))


class MemberLeft(_Event):
    """A user left the lobby (informational)."""

    event: Literal["MemberLeft"] = "MemberLeft"
    user_id: int = Field(validation_alias=AliasChoices("user_id", "userId"))
    user_name: str = Field(default="", validation_alias=AliasChoices("user_name", "userName"))


class MemberStatusUpdated(_Event):
    """A member toggled readiness (informational)."""

    event: Literal["MemberStatusUpdated"] = "MemberStatusUpdated"
    user_id: int = Field(validation_alias=AliasChoices("user_id", "userId"))
    user_name: str = Field(default="", validation_alias=AliasChoices("user_name", "userName"))
    status: MemberStatus


class LobbyMessageSent(_Event):
    """An authoritative chat message."""

    event: Literal["LobbyMessageSent"] = "LobbyMessageSent"
    message: ChatMessage


class WorkoutStarted(_Event):
    """The initiator started the workout.

    ``workout_data`` may be missing; consumers fall back to the latest
    authoritative session's plan.
    """

    event: Literal["WorkoutStarted"] = "WorkoutStarted"
    session_id: str | None = Field(
        default=None, validation_alias=AliasChoices("session_id", "sessionId")
    )
    workout_data: WorkoutData | None = Field(
        default=None, validation_alias=AliasChoices("workout_data", "workoutData")
    )
    started_at: float | None = None


class LobbyDeleted(_Event):
    """The lobby no longer exists."""

    event: Literal["LobbyDeleted"] = "LobbyDeleted"
    session_id: str | None = Field(
        default=None, validation_alias=AliasChoices("session_id", "sessionId")
    )
    reason: str | None = None


class MemberKicked(_Event):
    """A member was removed by the initiator."""

    event: Literal["MemberKicked"] = "MemberKicked"
    session_id: str | None = Field(
        default=None, validation_alias=AliasChoices("session_id", "sessionId")
    )
    kicked_user_id: int = Field(
        validation_alias=AliasChoices("kicked_user_id", "kickedUserId", "user_id")
    )
    kicked_user_name: str = Field(
        default="", validation_alias=AliasChoices("kicked_user_name", "kickedUserName")
    )


class InitiatorRoleTransferred(_Event):
    """The initiator role moved to another member (informational)."""

    event: Literal["InitiatorRoleTransferred"] = "InitiatorRoleTransferred"
    new_initiator_id: int = Field(
        validation_alias=AliasChoices("new_initiator_id", "newInitiatorId")
    )
    new_initiator_name: str = Field(
        default="", validation_alias=AliasChoices("new_initiator_name", "newInitiatorName")
    )


LobbyEvent = Annotated[
    LobbyStateChanged
    | MemberJoined
    | MemberLeft
    | MemberStatusUpdated
    | LobbyMessageSent
    | WorkoutStarted
    | LobbyDeleted
    | MemberKicked
    | InitiatorRoleTransferred,
    Field(discriminator="event"),
]

_lobby_event_adapter: TypeAdapter[LobbyEvent] = TypeAdapter(LobbyEvent)

# Wire names used by older lobby service builds
EVENT_NAME_ALIASES = {
    "initiator.transferred": "InitiatorRoleTransferred",
    "PassInitiatorRole": "InitiatorRoleTransferred",
    "MemberStatusUpdate": "MemberStatusUpdated",
}


def parse_lobby_event(event_name: str, data: Any) -> LobbyEvent | None:
    """Parse a push-channel event into a typed lobby event.

    Args:
        event_name: Event name as broadcast by the lobby service
        data: Decoded event payload

    Returns:
        Parsed event, or None for unknown or malformed events
    """
    name = EVENT_NAME_ALIASES.get(event_name, event_name)
    if not isinstance(data, dict):
        data = {}

    payload: dict[str, Any]
    if name == "LobbyStateChanged":
        state = data.get("lobby_state", data)
        if isinstance(state, dict) and "version" not in state and "version" in data:
            state = {**state, "version": data["version"]}
        payload = {"event": name, "lobby_state": state}
    elif name == "LobbyMessageSent":
        payload = {"event": name, "message": data.get("message_data", data)}
    else:
        payload = {**data, "event": name}

    try:
        return _lobby_event_adapter.validate_python(payload)
    except ValidationError as e:
        if any(err["type"] == "union_tag_invalid" for err in e.errors()):
            logger.debug(f"Ignoring unknown lobby event {event_name}")
        else:
            logger.warning(f"Malformed lobby event {event_name}: {e}")
        return None


class PresenceHere(_Event):
    """Full snapshot of a presence channel's members."""

    kind: Literal["here"] = "here"
    user_ids: frozenset[int]


class PresenceJoining(_Event):
    """A user appeared on a presence channel."""

    kind: Literal["joining"] = "joining"
    user_id: int


class PresenceLeaving(_Event):
    """A user disappeared from a presence channel."""

    kind: Literal["leaving"] = "leaving"
    user_id: int


PresenceEvent = Annotated[
    PresenceHere | PresenceJoining | PresenceLeaving,
    Field(discriminator="kind"),
]


class GroupWorkoutInvitation(_Event):
    """Invitation to join a group lobby, delivered on the group channel."""

    group_id: int
    session_id: str
    initiator_id: int
    initiator_name: str = ""
    workout_data: WorkoutData | None = None
