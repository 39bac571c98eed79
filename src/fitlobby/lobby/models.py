"""Lobby data models.

These mirror the lobby service's wire format (snake_case keys) through
pydantic aliases. Sessions and members are frozen: the store replaces them
wholesale instead of patching fields in place.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

TEMP_MESSAGE_PREFIX = "temp_"
SYSTEM_MESSAGE_PREFIX = "system_"


class MemberStatus(Enum):
    """Readiness of a lobby member."""

    WAITING = "waiting"
    READY = "ready"


class SessionStatus(Enum):
    """Lifecycle status of a lobby session on the lobby service."""

    WAITING = "waiting"
    STARTING = "starting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ConnectionMode(Enum):
    """Which transport currently delivers events for a session."""

    PUSH = "push"
    POLL = "poll"
    DISCONNECTED = "disconnected"


class WorkoutData(BaseModel):
    """Workout plan attached to a lobby.

    The plan itself is produced by the recommendation service and is opaque
    to the lobby client apart from its exercise list.
    """

    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)

    workout_name: str | None = None
    exercises: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def has_exercises(self) -> bool:
        return len(self.exercises) > 0


class Member(BaseModel):
    """A participant of a lobby session."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user_id: int
    display_name: str = Field(default="", alias="user_name")
    status: MemberStatus = MemberStatus.WAITING
    role: str = "member"
    fitness_level: str | None = None

    @property
    def is_ready(self) -> bool:
        return self.status == MemberStatus.READY


class LobbySession(BaseModel):
    """Authoritative state of one lobby session.

    Attributes:
        session_id: Lobby identifier assigned by the lobby service
        group_id: Group the lobby belongs to
        initiator_id: Member currently holding the initiator role
        status: Session lifecycle status
        workout_data: Current workout plan (possibly without exercises)
        members: Members in join order
        version: Monotonic version assigned by the lobby service
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    session_id: str
    group_id: int
    initiator_id: int
    status: SessionStatus = SessionStatus.WAITING
    workout_data: WorkoutData = Field(default_factory=WorkoutData)
    members: tuple[Member, ...] = ()
    version: int = 0

    @model_validator(mode="before")
    @classmethod
    def _coerce_workout_data(cls, data: Any) -> Any:
        # The lobby service sends null workout data before a plan exists
        if isinstance(data, dict) and data.get("workout_data") is None:
            data = {**data, "workout_data": {}}
        return data

    @model_validator(mode="after")
    def _check_unique_members(self) -> "LobbySession":
        ids = [m.user_id for m in self.members]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate member ids in session {self.session_id}")
        return self

    @property
    def is_valid(self) -> bool:
        """A session is only usable when its initiator is one of its members."""
        return self.member(self.initiator_id) is not None

    @property
    def member_count(self) -> int:
        return len(self.members)

    @property
    def member_ids(self) -> list[int]:
        return [m.user_id for m in self.members]

    def member(self, user_id: int) -> Member | None:
        for m in self.members:
            if m.user_id == user_id:
                return m
        return None

    @property
    def all_ready(self) -> bool:
        return bool(self.members) and all(m.is_ready for m in self.members)

    @property
    def has_exercises(self) -> bool:
        return self.workout_data.has_exercises


class ChatMessage(BaseModel):
    """A lobby chat line.

    Ids starting with ``temp_`` are local echoes that have not been
    confirmed by the lobby service yet.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    message_id: str
    user_id: int | None = None
    user_name: str = ""
    text: str = Field(alias="message")
    timestamp: float
    is_system: bool = Field(default=False, alias="is_system_message")

    @property
    def is_temporary(self) -> bool:
        return self.message_id.startswith(TEMP_MESSAGE_PREFIX)


@dataclass(frozen=True)
class PendingInvite:
    """An invitation sent to ``user_id`` for ``session_id``."""

    session_id: str
    user_id: int
    expires_at_ms: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at_ms


@dataclass(frozen=True)
class CurrentUser:
    """The participant this client acts for."""

    user_id: int
    display_name: str
