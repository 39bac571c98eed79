"""Lobby controller.

Wires one lobby session together: transport events flow into the state
store, chat and presence; the controller applies the lobby's rules on top
and issues remote commands.

Rules enforced here:
- Only ``LobbyStateChanged`` mutates lobby fields. Join/leave/status events
  only produce system chat lines.
- Kick, role transfer and workout start are initiator-only, checked against
  the latest authoritative initiator. The member list is never changed
  locally after kick or transfer; the next broadcast does that.
- The initiator's client generates the group workout once every member is
  ready, and clears the plan when the lobby shrinks below two members.
- Cleanup runs at most once per attachment, whatever triggers it.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar, assert_never

from fitlobby.api.client import InviteResult, LobbyApiClient
from fitlobby.api.recommendations import WorkoutRecommender
from fitlobby.errors import (
    AlreadyInLobbyError,
    AuthorizationError,
    CorruptSessionError,
    LobbyActionError,
    LobbyClientError,
    NotFoundError,
    RateLimitedError,
    WorkoutStartError,
)
from fitlobby.lobby.chat import ChatSubsystem
from fitlobby.lobby.feed import GroupInvitationFeed
from fitlobby.lobby.invites import InviteTracker
from fitlobby.lobby.lifecycle import (
    CleanupGuard,
    CleanupPhase,
    CleanupReason,
    EdgeTrigger,
    GenerationGuard,
)
from fitlobby.lobby.models import (
    ConnectionMode,
    CurrentUser,
    LobbySession,
    MemberStatus,
    SessionStatus,
    WorkoutData,
)
from fitlobby.lobby.presence import (
    PresenceScope,
    PresenceTracker,
    group_presence_channel,
    lobby_presence_channel,
)
from fitlobby.lobby.store import LobbyStateStore, StoreSnapshot
from fitlobby.transport.events import (
    InitiatorRoleTransferred,
    LobbyDeleted,
    LobbyEvent,
    LobbyMessageSent,
    LobbyStateChanged,
    MemberJoined,
    MemberKicked,
    MemberLeft,
    MemberStatusUpdated,
    WorkoutStarted,
    parse_lobby_event,
)
from fitlobby.transport.manager import TransportManager
from fitlobby.transport.push import PushClient

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

MIN_MEMBERS_FOR_PLAN = 2

T = TypeVar("T")


def personal_channel(user_id: int) -> str:
    return f"private-user.{user_id}"


class NoticeLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class LobbyNotice:
    """A user-facing message produced by the controller."""

    level: NoticeLevel
    message: str
    error: LobbyClientError | None = None


@dataclass(frozen=True)
class WorkoutLaunch:
    """Everything the workout session screen needs after a start."""

    session_id: str
    group_id: int
    initiator_id: int
    workout_data: WorkoutData
    member_ids: list[int]
    started_at: float | None = None


class LobbyController:
    """Orchestrates one lobby session for the local user.

    A controller can attach to one lobby at a time. After cleanup it may be
    reused to create or join another lobby.

    Attributes:
        user: The local participant
        store: Lobby state
        chat: Lobby chat
        connection_mode: Transport currently serving the lobby
    """

    def __init__(
        self,
        user: CurrentUser,
        api: LobbyApiClient,
        recommender: WorkoutRecommender,
        transport: TransportManager,
        push: PushClient,
        presence: PresenceTracker,
        invites: InviteTracker,
        feed: GroupInvitationFeed | None = None,
        session_factory: "async_sessionmaker[AsyncSession] | None" = None,
        chat_reconcile_window: float = 5.0,
        chat_page_size: int = 50,
        on_workout_started: Callable[[WorkoutLaunch], None] | None = None,
        on_notice: Callable[[LobbyNotice], None] | None = None,
        on_mode_change: Callable[[ConnectionMode], None] | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            user: The local participant
            api: Lobby service client
            recommender: Workout plan generator
            transport: Hybrid lobby transport
            push: Push client (personal and presence channels)
            presence: Process-wide presence tracker
            invites: Process-wide invite tracker
            feed: Group invitation feed, suspended while in a lobby
            session_factory: Local database for the resume record (optional)
            chat_reconcile_window: See ``ChatSubsystem``
            chat_page_size: Chat history page size
            on_workout_started: Called once when the workout starts
            on_notice: Receives user-facing notices
            on_mode_change: Receives transport mode changes
        """
        self.user = user
        self._api = api
        self._recommender = recommender
        self._transport = transport
        self._push = push
        self._presence = presence
        self._invites = invites
        self._feed = feed
        self._session_factory = session_factory
        self.on_workout_started = on_workout_started
        self.on_notice = on_notice
        self.on_mode_change = on_mode_change

        self.store = LobbyStateStore()
        self.chat = ChatSubsystem(
            api,
            user,
            reconcile_window=chat_reconcile_window,
            page_size=chat_page_size,
        )
        self.connection_mode = ConnectionMode.DISCONNECTED

        self._cleanup = CleanupGuard()
        self._cleanup.finish()
        self._generation = GenerationGuard()
        self._auto_generate = EdgeTrigger()
        self._plan_requested_for: frozenset[int] | None = None
        self._clearing_plan = False
        self._resyncing = False
        self._session_id: str | None = None
        self._group_id: int | None = None
        self._last_member_count: int | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._entering = False

        self._unsubscribe_transport: Callable[[], None] | None = None
        self._unbind_lobby_presence: Callable[[], None] | None = None
        self._unbind_group_presence: Callable[[], None] | None = None
        self._personal_channel: str | None = None

        self.store.subscribe(self._on_store_change)

    @property
    def is_active(self) -> bool:
        """Whether the controller is attached to a lobby that is not being torn down."""
        return self._cleanup.is_active

    @property
    def session(self) -> LobbySession | None:
        return self.store.session

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def is_initiator(self) -> bool:
        return self.store.is_initiator(self.user.user_id)

    @property
    def is_generating(self) -> bool:
        return self._auto_generate.in_flight

    async def create_lobby(
        self, group_id: int, workout_data: WorkoutData | None = None
    ) -> LobbySession:
        """Create a lobby for ``group_id`` with the local user as initiator.

        A ``close()`` or ``leave()`` while the request is in flight cancels
        the entry: the new lobby is left remotely and never attached.

        Raises:
            LobbyActionError: The user is still registered in another lobby
                even after the automatic force-leave, or is already attached
        """
        return await self._enter(lambda: self._api.create_lobby(group_id, workout_data))

    async def join_lobby(self, session_id: str) -> LobbySession:
        """Join an existing lobby (typically from an invitation).

        Raises:
            LobbyActionError: See ``create_lobby``
        """
        return await self._enter(lambda: self._api.join_lobby(session_id))

    def _require_detached(self) -> None:
        if self._entering:
            raise LobbyActionError("Already entering a lobby")
        if self.is_active:
            raise LobbyActionError(f"Already in lobby {self.session_id}")

    async def _enter(self, call: Callable[[], Awaitable[LobbySession]]) -> LobbySession:
        self._require_detached()
        self._entering = True
        token = self._generation.advance()
        try:
            session = await self._with_stale_lobby_retry(call)
            if not self._generation.is_current(token):
                logger.info(f"Entry into lobby {session.session_id} cancelled before attach")
                await self._leave_abandoned(session.session_id)
                return session
            await self._attach(session, token)
        finally:
            self._entering = False
        return session

    async def _leave_abandoned(self, session_id: str) -> None:
        try:
            await self._api.leave_lobby(session_id)
            logger.info(f"Left abandoned lobby {session_id}")
        except LobbyClientError as e:
            logger.warning(f"Remote leave of abandoned lobby {session_id} failed: {e}")

    async def _with_stale_lobby_retry(self, call: Callable[[], Awaitable[T]]) -> T:
        """Run ``call``, force-leaving stale lobbies and retrying exactly once."""
        try:
            return await call()
        except AlreadyInLobbyError as e:
            logger.info(f"Stale lobby membership ({e.message}); forcing leave and retrying")

        try:
            await self._api.force_leave_all()
        except LobbyClientError as e:
            raise LobbyActionError(f"Could not leave your previous lobby: {e.message}") from e

        try:
            return await call()
        except AlreadyInLobbyError as e:
            raise LobbyActionError(
                "You are still in another lobby. Leave it and try again."
            ) from e

    async def _attach(self, session: LobbySession, token: int) -> None:
        """Attach to ``session``; a cleanup during any await here ends the attach."""
        sid = session.session_id
        self._cleanup.reset()
        self._auto_generate = EdgeTrigger()
        self._plan_requested_for = None
        self._clearing_plan = False
        self._last_member_count = None
        self._session_id = sid
        self._group_id = session.group_id
        logger.info(f"Attaching to lobby {sid} (group {session.group_id})")

        try:
            self.store.set_session(session)
        except CorruptSessionError as e:
            # The store flags a resync; the listener re-fetches
            logger.warning(f"Lobby {sid} attached with corrupt state: {e.message}")

        await self._save_resume_record(session)
        if not self._generation.is_current(token):
            # Cleanup ran while the record was being written
            await self._run_step("clear resume record", self._clear_resume_record(sid))
            return

        self._invites.clear_invite_for_user(sid, self.user.user_id)
        if self._feed is not None:
            self._feed.suspend(session.group_id)

        self._unsubscribe_transport = self._transport.subscribe(
            sid,
            self._handle_event,
            on_mode_change=self._handle_mode_change,
            on_error=self._handle_transport_error,
        )
        self._unbind_lobby_presence = self._presence.bind(
            self._push, PresenceScope.LOBBY, lobby_presence_channel(sid)
        )
        self._personal_channel = personal_channel(self.user.user_id)
        self._push.subscribe(self._personal_channel, self._handle_personal_event)

        self.chat.attach(sid)
        await self.chat.load_initial()

    async def _handle_event(self, event: LobbyEvent) -> None:
        if not self.is_active:
            return

        match event:
            case LobbyStateChanged(session=session):
                self._apply_session(session)
            case MemberJoined(user_id=user_id, user_name=name):
                if self.session_id is not None:
                    self._invites.clear_invite_for_user(self.session_id, user_id)
                self.chat.add_system_message(f"{name or 'A member'} joined the lobby")
            case MemberLeft(user_name=name):
                self.chat.add_system_message(f"{name or 'A member'} left the lobby")
            case MemberStatusUpdated(user_name=name, status=status):
                state = "is ready" if status == MemberStatus.READY else "is not ready"
                self.chat.add_system_message(f"{name or 'A member'} {state}")
            case LobbyMessageSent(message=message):
                self.chat.receive(message)
            case InitiatorRoleTransferred(new_initiator_id=new_id, new_initiator_name=name):
                if new_id == self.user.user_id:
                    self.chat.add_system_message("You are now the lobby creator")
                else:
                    self.chat.add_system_message(f"{name or 'A member'} is now the lobby creator")
            case MemberKicked(kicked_user_id=kicked_id, kicked_user_name=name):
                if kicked_id == self.user.user_id:
                    await self._handle_kicked()
                else:
                    self.chat.add_system_message(f"{name or 'A member'} was removed from the lobby")
            case WorkoutStarted():
                await self._handle_workout_started(event)
            case LobbyDeleted():
                self._notify(NoticeLevel.INFO, "This lobby has been closed.")
                await self.cleanup(CleanupReason.DELETED)
            case _:
                assert_never(event)

    async def _handle_personal_event(self, event_name: str, data: Any) -> None:
        event = parse_lobby_event(event_name, data)
        if not isinstance(event, MemberKicked) or event.kicked_user_id != self.user.user_id:
            return
        if event.session_id is not None and event.session_id != self.session_id:
            return
        if self.is_active:
            await self._handle_kicked()

    async def _handle_kicked(self) -> None:
        self._notify(NoticeLevel.WARNING, "You have been removed from the workout lobby.")
        await self.cleanup(CleanupReason.KICKED)

    def _apply_session(self, session: LobbySession) -> None:
        if session.session_id != self.session_id:
            logger.debug(f"Ignoring state for lobby {session.session_id}")
            return
        try:
            self.store.set_session(session)
        except CorruptSessionError as e:
            logger.warning(f"Corrupt lobby state, re-fetching: {e.message}")

    async def _handle_workout_started(self, event: WorkoutStarted) -> None:
        session = self.store.committed
        if session is None:
            return

        plan = event.workout_data
        if plan is None or not plan.has_exercises:
            plan = session.workout_data
        if not plan.has_exercises:
            error = WorkoutStartError("The workout started without a workout plan")
            logger.error(f"Workout started in lobby {session.session_id} without a plan")
            self._notify(NoticeLevel.ERROR, "Couldn't load the workout. Please try again.", error)
            self._spawn(self.refresh())
            return

        launch = WorkoutLaunch(
            session_id=session.session_id,
            group_id=session.group_id,
            initiator_id=session.initiator_id,
            workout_data=plan,
            member_ids=session.member_ids,
            started_at=event.started_at,
        )
        self._invites.clear_invite_session(session.session_id)
        await self.cleanup(CleanupReason.WORKOUT_STARTED)
        logger.info(f"Workout started for lobby {launch.session_id}")
        if self.on_workout_started is not None:
            self.on_workout_started(launch)

    def _handle_mode_change(self, mode: ConnectionMode) -> None:
        previous = self.connection_mode
        self.connection_mode = mode
        if self.on_mode_change is not None:
            self.on_mode_change(mode)
        # Nothing is ordered across a transport switch; take a fresh snapshot
        if mode == ConnectionMode.PUSH and previous == ConnectionMode.POLL and self.is_active:
            self._spawn(self.refresh())

    def _handle_transport_error(self, error: Exception) -> None:
        logger.warning(f"Lobby transport failed: {error}")
        self._notify(NoticeLevel.WARNING, "Connection to the lobby was lost.")

    def _on_store_change(self, snapshot: StoreSnapshot) -> None:
        if not self.is_active:
            return
        if snapshot.needs_resync:
            if not self._resyncing:
                self._spawn(self.refresh())
            return
        session = snapshot.session
        if session is None:
            return
        self._check_membership_drop(session)
        self._check_auto_generation(session)

    def _check_auto_generation(self, session: LobbySession) -> None:
        member_ids = frozenset(session.member_ids)
        if session.has_exercises or member_ids != self._plan_requested_for:
            self._plan_requested_for = None

        condition = (
            session.initiator_id == self.user.user_id
            and session.status == SessionStatus.WAITING
            and session.member_count >= MIN_MEMBERS_FOR_PLAN
            and session.all_ready
            and not session.has_exercises
            and self._plan_requested_for is None
        )
        if self._auto_generate.evaluate(condition):
            self._spawn(self._generate_workout(session))

    async def _generate_workout(self, session: LobbySession) -> None:
        token = self._generation.token
        member_ids = session.member_ids
        logger.info(f"All {len(member_ids)} members ready; generating group workout")

        try:
            plan = await self._recommender.generate_group_workout(member_ids)
        except LobbyClientError as e:
            logger.warning(f"Workout generation failed: {e}")
            self._auto_generate.rearm()
            self._notify(NoticeLevel.WARNING, "Couldn't generate a workout. Try again.", e)
            return

        if not self._still_current(token, session):
            logger.info("Discarding generated workout: lobby changed while generating")
            self._auto_generate.rearm()
            self._reevaluate()
            return

        try:
            await self._api.update_workout_data(session.session_id, plan)
        except LobbyClientError as e:
            logger.warning(f"Failed to attach generated workout: {e}")
            self._auto_generate.rearm()
            self._notify(NoticeLevel.WARNING, "Couldn't share the workout. Try again.", e)
            return

        if self._generation.is_current(token):
            self._plan_requested_for = frozenset(member_ids)
            self._auto_generate.done()
            logger.info(f"Attached generated workout to lobby {session.session_id}")

    def _still_current(self, token: int, session: LobbySession) -> bool:
        current = self.store.session
        return (
            self._generation.is_current(token)
            and self.is_active
            and current is not None
            and current.session_id == session.session_id
            and current.initiator_id == self.user.user_id
            and set(current.member_ids) == set(session.member_ids)
            and current.all_ready
            and not current.has_exercises
        )

    def _reevaluate(self) -> None:
        if self.store.session is not None:
            self._on_store_change(self.store.snapshot())

    def _check_membership_drop(self, session: LobbySession) -> None:
        previous = self._last_member_count
        self._last_member_count = session.member_count
        if (
            previous is None
            or previous < MIN_MEMBERS_FOR_PLAN
            or session.initiator_id != self.user.user_id
            or session.member_count >= MIN_MEMBERS_FOR_PLAN
            or not session.has_exercises
            or self._clearing_plan
        ):
            return
        logger.info(f"Lobby {session.session_id} dropped below two members; clearing plan")
        self._clearing_plan = True
        self.store.set_local_workout_data(WorkoutData())
        self._spawn(self._clear_remote_plan(session.session_id))

    async def _clear_remote_plan(self, session_id: str) -> None:
        try:
            await self._api.update_workout_data(session_id, None)
        except LobbyClientError as e:
            logger.warning(f"Failed to clear workout plan of lobby {session_id}: {e}")
        finally:
            self._clearing_plan = False

    async def refresh(self) -> LobbySession | None:
        """Re-fetch the authoritative lobby state.

        A lobby that no longer exists is cleaned up. Other failures are logged.
        """
        sid = self.session_id
        if sid is None or not self.is_active or self._resyncing:
            return None
        token = self._generation.token
        self._resyncing = True
        try:
            session = await self._api.get_lobby_state(sid)
        except NotFoundError:
            self._resyncing = False
            if self._generation.is_current(token):
                self._notify(NoticeLevel.INFO, "This lobby has been closed.")
                await self.cleanup(CleanupReason.DELETED)
            return None
        except LobbyClientError as e:
            self._resyncing = False
            logger.warning(f"Failed to refresh lobby {sid}: {e}")
            return None

        self._resyncing = False
        if not self._generation.is_current(token) or not self.is_active:
            return None
        try:
            self.store.set_session(session)
        except CorruptSessionError as e:
            logger.error(f"Lobby service returned corrupt state for {sid}: {e.message}")
            return None
        return session

    async def set_ready(self, ready: bool) -> None:
        """Set the local user's readiness.

        The store reflects the change immediately as an advisory value; the
        broadcast that follows the remote update replaces it.
        """
        sid = self._require_session()
        member = self.store.member(self.user.user_id)
        if member is None:
            raise LobbyActionError("You are not a member of this lobby")

        status = MemberStatus.READY if ready else MemberStatus.WAITING
        previous = member.status
        committed = self.store.committed
        self.store.update_member_status(self.user.user_id, status)
        try:
            await self._api.update_member_status(sid, status)
        except LobbyClientError:
            # Undo only if no authoritative state has replaced the overlay
            if self.store.committed is committed:
                self.store.update_member_status(self.user.user_id, previous)
            raise

    async def toggle_ready(self) -> bool:
        """Flip the local user's readiness.

        Returns:
            The new readiness
        """
        ready = not self.store.is_member_ready(self.user.user_id)
        await self.set_ready(ready)
        return ready

    async def kick_member(self, user_id: int) -> None:
        """Remove a member (initiator only); the broadcast updates the list."""
        sid = self._require_initiator("kick members")
        if user_id == self.user.user_id:
            raise LobbyActionError("You cannot remove yourself")
        if self.store.member(user_id) is None:
            raise LobbyActionError(f"User {user_id} is not in this lobby")
        await self._api.kick_member(sid, user_id)
        logger.info(f"Kick of user {user_id} requested in lobby {sid}")

    async def transfer_initiator(self, user_id: int) -> None:
        """Hand the initiator role to another member (initiator only)."""
        sid = self._require_initiator("transfer the creator role")
        if user_id == self.user.user_id:
            raise LobbyActionError("You already are the lobby creator")
        if self.store.member(user_id) is None:
            raise LobbyActionError(f"User {user_id} is not in this lobby")
        await self._api.transfer_initiator(sid, user_id)
        logger.info(f"Initiator transfer to user {user_id} requested in lobby {sid}")

    async def start_workout(self) -> None:
        """Start the workout for everyone (initiator only).

        Every member, including this one, transitions on the ``WorkoutStarted``
        broadcast.

        Raises:
            AuthorizationError: The local user is not the initiator
            WorkoutStartError: The lobby has no workout plan yet
        """
        sid = self._require_initiator("start the workout")
        if not self.store.has_exercises:
            raise WorkoutStartError("Generate a workout before starting")
        await self._api.start_workout(sid)
        logger.info(f"Workout start requested for lobby {sid}")

    async def send_chat(self, text: str | None = None) -> None:
        """Send a chat message; see ``ChatSubsystem.send``."""
        await self.chat.send(text)

    async def invite_member(self, user_id: int) -> InviteResult:
        """Invite a group member and remember the pending invitation."""
        sid = self._require_session()
        session = self.store.session
        if session is None:
            raise LobbyActionError("Lobby state is still loading")
        plan = session.workout_data if session.has_exercises else None
        result = await self._api.invite_member(sid, user_id, session.group_id, plan)
        self._invites.track_invite(sid, user_id)
        return result

    async def invite_all(self, user_ids: list[int]) -> dict[int, InviteResult]:
        """Invite every eligible user in ``user_ids``.

        Users that are members or already hold a pending invitation are
        skipped. Individual failures are logged; a rate limit stops the run.

        Returns:
            Outcome per invited user
        """
        results: dict[int, InviteResult] = {}
        for user_id in self.invite_candidates(user_ids):
            try:
                results[user_id] = await self.invite_member(user_id)
            except RateLimitedError as e:
                logger.warning(f"Invite quota exhausted after {len(results)} invite(s): {e}")
                self._notify(NoticeLevel.WARNING, "Too many invitations. Try again later.", e)
                break
            except LobbyClientError as e:
                logger.warning(f"Failed to invite user {user_id}: {e}")
        return results

    def invite_candidates(
        self, group_member_ids: list[int], online_only: bool = False
    ) -> list[int]:
        """Filter group members down to the ones that can be invited.

        Args:
            group_member_ids: Members of the lobby's group
            online_only: Keep only users online in the group presence scope

        Returns:
            Candidates in the given order
        """
        sid = self.session_id
        if sid is None:
            return []
        excluded = {self.user.user_id}
        excluded.update(m.user_id for m in self.store.members)
        excluded.update(self._invites.get_pending_invite_ids(sid))
        return [
            uid
            for uid in group_member_ids
            if uid not in excluded
            and (not online_only or self._presence.is_online(PresenceScope.GROUP, uid))
        ]

    def open_group_presence(self) -> None:
        """Track which group members are online, for the invite list."""
        if self._unbind_group_presence is not None or self._group_id is None:
            return
        self._unbind_group_presence = self._presence.bind(
            self._push, PresenceScope.GROUP, group_presence_channel(self._group_id)
        )

    def close_group_presence(self) -> None:
        if self._unbind_group_presence is not None:
            self._unbind_group_presence()
            self._unbind_group_presence = None

    def _require_session(self) -> str:
        sid = self.session_id
        if sid is None or not self.is_active:
            raise LobbyActionError("Not in a lobby")
        return sid

    def _require_initiator(self, action: str) -> str:
        sid = self._require_session()
        if not self.is_initiator:
            raise AuthorizationError(f"Only the lobby creator can {action}")
        return sid

    async def leave(self) -> None:
        """Leave the lobby explicitly."""
        await self.cleanup(CleanupReason.LEFT)

    async def close(self) -> None:
        """Tear down when the lobby view goes away.

        Issues the remote leave unless an explicit leave already did.
        """
        await self.cleanup(CleanupReason.UNMOUNTED)

    async def cleanup(self, reason: CleanupReason) -> None:
        """Run the cleanup sequence once; later calls are no-ops.

        Each step runs regardless of whether the previous ones failed.
        """
        if self._entering and self._cleanup.phase == CleanupPhase.CLEANED:
            # Nothing is attached yet; the entry path leaves the lobby it gets back
            logger.info(f"Cancelling lobby entry ({reason.value})")
            self._generation.advance()
            return
        if not self._cleanup.begin(reason):
            logger.debug(f"Cleanup ({reason.value}) skipped: phase {self._cleanup.phase.value}")
            return

        sid = self._session_id
        group_id = self._group_id
        was_initiator = self.is_initiator
        logger.info(f"Cleaning up lobby {sid} ({reason.value})")

        self._generation.advance()
        self._cancel_tasks()

        if sid is not None and (
            reason == CleanupReason.DELETED
            or (reason.requires_remote_leave and was_initiator)
        ):
            self._invites.clear_invite_session(sid)

        await self._run_step("clear resume record", self._clear_resume_record(sid))
        await self._run_step("unsubscribe lobby transport", self._teardown_transport)
        await self._run_step("unsubscribe lobby presence", self._teardown_lobby_presence)
        await self._run_step("unsubscribe group presence", self.close_group_presence)
        await self._run_step("unsubscribe personal channel", self._teardown_personal_channel)
        await self._run_step("clear lobby state", self._clear_state)
        if group_id is not None and self._feed is not None:
            feed = self._feed
            await self._run_step("resume group invitations", lambda: feed.resume(group_id))

        if sid is not None and reason.requires_remote_leave and self._cleanup.claim_remote_leave():
            try:
                await self._api.leave_lobby(sid)
                logger.info(f"Left lobby {sid}")
            except LobbyClientError as e:
                logger.warning(f"Remote leave of lobby {sid} failed: {e}")

        self._session_id = None
        self._group_id = None
        self.connection_mode = ConnectionMode.DISCONNECTED
        self._cleanup.finish()
        logger.info(f"Lobby {sid} cleaned up")

    async def _run_step(
        self, name: str, step: Callable[[], Any] | Coroutine[Any, Any, Any]
    ) -> None:
        try:
            result = step() if callable(step) else step
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Cleanup step '{name}' failed")

    def _teardown_transport(self) -> None:
        if self._unsubscribe_transport is not None:
            unsubscribe = self._unsubscribe_transport
            self._unsubscribe_transport = None
            unsubscribe()

    def _teardown_lobby_presence(self) -> None:
        if self._unbind_lobby_presence is not None:
            unbind = self._unbind_lobby_presence
            self._unbind_lobby_presence = None
            unbind()

    def _teardown_personal_channel(self) -> None:
        if self._personal_channel is not None:
            channel = self._personal_channel
            self._personal_channel = None
            self._push.unsubscribe(channel)

    def _clear_state(self) -> None:
        self.store.clear()
        self.chat.clear()

    async def _save_resume_record(self, session: LobbySession) -> None:
        if self._session_factory is None:
            return

        from fitlobby.db.repositories.resume import ResumeRecordRepository

        try:
            async with self._session_factory() as db:
                await ResumeRecordRepository(db).save(self.user.user_id, session)
                await db.commit()
        except Exception as e:
            # Local bookkeeping only; the lobby itself is unaffected
            logger.warning(f"Failed to save resume record for lobby {session.session_id}: {e}")

    async def _clear_resume_record(self, session_id: str | None) -> None:
        if self._session_factory is None or session_id is None:
            return

        from fitlobby.db.repositories.resume import ResumeRecordRepository

        async with self._session_factory() as db:
            await ResumeRecordRepository(db).delete_for_session(session_id, self.user.user_id)
            await db.commit()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Lobby background task failed: {error!r}")

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

    async def wait_idle(self) -> None:
        """Wait until no background work is pending."""
        while True:
            pending = [t for t in self._tasks if t is not asyncio.current_task()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _notify(
        self, level: NoticeLevel, message: str, error: LobbyClientError | None = None
    ) -> None:
        if self.on_notice is None:
            return
        try:
            self.on_notice(LobbyNotice(level=level, message=message, error=error))
        except Exception:
            logger.exception("Error in lobby notice handler")
