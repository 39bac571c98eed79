"""Canonical in-memory state of the active lobby.

The store keeps two tiers:

- committed: the latest authoritative ``LobbySession`` from the lobby service
- pending-local: advisory overlays (this user's optimistic ready toggle and
  the add/remove escape hatches) applied on top of the committed session

Readers only ever see the merged view, rebuilt as a new immutable session on
every mutation. An authoritative ``set_session`` describes every field, so it
discards the whole pending tier: the authoritative broadcast always wins.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from fitlobby.errors import CorruptSessionError
from fitlobby.lobby.models import LobbySession, Member, MemberStatus, WorkoutData

logger = logging.getLogger(__name__)


@dataclass
class PendingLocal:
    """Advisory changes not yet confirmed by an authoritative broadcast."""

    statuses: dict[int, MemberStatus] = field(default_factory=dict)
    added: dict[int, Member] = field(default_factory=dict)
    removed: set[int] = field(default_factory=set)
    workout_data: WorkoutData | None = None

    def is_empty(self) -> bool:
        return not (self.statuses or self.added or self.removed or self.workout_data is not None)


@dataclass(frozen=True)
class StoreSnapshot:
    """What listeners receive after every mutation."""

    version: int
    session: LobbySession | None
    needs_resync: bool


StoreListener = Callable[[StoreSnapshot], None]


class LobbyStateStore:
    """Single writer of lobby fields.

    Attributes:
        version: Incremented on every mutation; lets consumers detect stale
            renders but carries no ordering across network round-trips
    """

    def __init__(self) -> None:
        self._committed: LobbySession | None = None
        self._pending = PendingLocal()
        self._view: LobbySession | None = None
        self._needs_resync = False
        self.version = 0
        self._listeners: list[StoreListener] = []

    def set_session(self, session: LobbySession) -> None:
        """Replace the lobby state wholesale with an authoritative session.

        Raises:
            CorruptSessionError: The initiator is not a member; the store keeps
                no session and flags a resync
        """
        if not session.is_valid:
            logger.warning(
                f"Discarding lobby {session.session_id}: initiator {session.initiator_id} "
                "is not a member"
            )
            self._committed = None
            self._pending = PendingLocal()
            self._needs_resync = True
            self._commit()
            raise CorruptSessionError(
                f"Initiator {session.initiator_id} missing from lobby {session.session_id}"
            )

        self._committed = session
        self._pending = PendingLocal()
        self._needs_resync = False
        logger.debug(
            f"Lobby {session.session_id} set (v{session.version}, "
            f"{session.member_count} members, status={session.status.value})"
        )
        self._commit()

    def update_member_status(self, user_id: int, status: MemberStatus) -> None:
        """Advisory status change for the current user's optimistic toggle."""
        if self._committed is None:
            return
        self._pending.statuses[user_id] = status
        self._commit()

    def set_local_workout_data(self, workout_data: WorkoutData) -> None:
        """Advisory plan change pending the authoritative broadcast."""
        if self._committed is None:
            return
        self._pending.workout_data = workout_data
        self._commit()

    def add_member(self, member: Member) -> None:
        """Escape hatch: show a member before the authoritative broadcast lands."""
        if self._committed is None:
            return
        self._pending.removed.discard(member.user_id)
        if self._committed.member(member.user_id) is None:
            self._pending.added[member.user_id] = member
        self._commit()

    def remove_member(self, user_id: int) -> None:
        """Escape hatch: hide a member before the authoritative broadcast lands.

        Removing the initiator leaves no valid view; the store then reports
        ``needs_resync`` until the next ``set_session``.
        """
        if self._committed is None:
            return
        self._pending.added.pop(user_id, None)
        self._pending.statuses.pop(user_id, None)
        self._pending.removed.add(user_id)
        self._commit()

    def clear(self) -> None:
        """Discard all session state."""
        self._committed = None
        self._pending = PendingLocal()
        self._needs_resync = False
        self._commit()
        logger.debug("Lobby store cleared")

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a listener called after every mutation.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            version=self.version, session=self._view, needs_resync=self._needs_resync
        )

    def _commit(self) -> None:
        self._view = self._merge()
        if self._committed is not None and self._view is None:
            self._needs_resync = True
        self.version += 1
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Error in lobby store listener")

    def _merge(self) -> LobbySession | None:
        committed = self._committed
        if committed is None:
            return None
        pending = self._pending
        if pending.is_empty():
            return committed

        members = [
            m.model_copy(update={"status": pending.statuses[m.user_id]})
            if m.user_id in pending.statuses
            else m
            for m in committed.members
            if m.user_id not in pending.removed
        ]
        members.extend(
            m.model_copy(update={"status": pending.statuses[m.user_id]})
            if m.user_id in pending.statuses
            else m
            for m in pending.added.values()
        )
        update: dict[str, object] = {"members": tuple(members)}
        if pending.workout_data is not None:
            update["workout_data"] = pending.workout_data
        view = committed.model_copy(update=update)
        return view if view.is_valid else None

    @property
    def session(self) -> LobbySession | None:
        """Merged view, or None when there is no valid session."""
        return self._view

    @property
    def committed(self) -> LobbySession | None:
        """Latest authoritative session, without advisory overlays."""
        return self._committed

    @property
    def has_pending_local(self) -> bool:
        return not self._pending.is_empty()

    @property
    def needs_resync(self) -> bool:
        return self._needs_resync

    @property
    def session_id(self) -> str | None:
        return self._committed.session_id if self._committed else None

    @property
    def members(self) -> tuple[Member, ...]:
        return self._view.members if self._view else ()

    @property
    def member_count(self) -> int:
        return len(self.members)

    def member(self, user_id: int) -> Member | None:
        return self._view.member(user_id) if self._view else None

    @property
    def initiator_id(self) -> int | None:
        return self._view.initiator_id if self._view else None

    def is_initiator(self, user_id: int) -> bool:
        return self._view is not None and self._view.initiator_id == user_id

    def is_member_ready(self, user_id: int) -> bool:
        member = self.member(user_id)
        return member is not None and member.is_ready

    @property
    def all_members_ready(self) -> bool:
        return self._view is not None and self._view.all_ready

    @property
    def workout_data(self) -> WorkoutData | None:
        return self._view.workout_data if self._view else None

    @property
    def has_exercises(self) -> bool:
        return self._view is not None and self._view.has_exercises
