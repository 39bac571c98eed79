"""Tracking of outgoing lobby invitations.

Without a record of who was already invited, re-opening the invite list or
repeating "invite all" re-sends invitations to users that still hold a
pending one. The lobby service rejects those duplicates, but every rejected
request still counts against the sender's hourly invitation quota.

One ``InviteTracker`` is built at process start and shared by every lobby
controller. Entries expire after the lobby service's own invitation TTL;
expired entries are treated as absent on read even before the periodic sweep
removes them.

When an invited user joins, the controller must call
``clear_invite_for_user`` so that a later leave makes them invitable again.
"""

import asyncio
import logging
import time
from collections.abc import Callable

from fitlobby.lobby.models import PendingInvite

logger = logging.getLogger(__name__)

DEFAULT_INVITE_TTL_SECONDS = 5 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


class InviteTracker:
    """Keyed TTL cache of "invitation already sent" facts.

    Attributes:
        ttl_seconds: How long a sent invite is considered pending
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        ttl_seconds: float = DEFAULT_INVITE_TTL_SECONDS,
    ) -> None:
        """Initialize the tracker.

        Args:
            clock: Returns the current time in seconds since the epoch
            ttl_seconds: Lifetime of a tracked invite
        """
        self._clock = clock
        self.ttl_seconds = ttl_seconds
        # session_id -> user_id -> PendingInvite
        self._invites: dict[str, dict[int, PendingInvite]] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def track_invite(self, session_id: str, user_id: int) -> PendingInvite:
        """Record that ``user_id`` was invited to ``session_id``.

        Call after a successful invite AND after an "already pending"
        rejection, since both mean an invitation now exists. Tracking the same
        pair again refreshes its expiry.
        """
        invite = PendingInvite(
            session_id=session_id,
            user_id=user_id,
            expires_at_ms=self._now_ms() + int(self.ttl_seconds * 1000),
        )
        self._invites.setdefault(session_id, {})[user_id] = invite
        logger.debug(f"Tracked invite for user {user_id} in lobby {session_id}")
        return invite

    def clear_invite_for_user(self, session_id: str, user_id: int) -> None:
        """Forget the invite for one user (their join was observed)."""
        session_invites = self._invites.get(session_id)
        if session_invites is None:
            return
        session_invites.pop(user_id, None)
        if not session_invites:
            del self._invites[session_id]

    def clear_invite_session(self, session_id: str) -> None:
        """Forget every invite for a session.

        Used when the lobby is deleted, the initiator leaves, or the workout
        starts.
        """
        if self._invites.pop(session_id, None) is not None:
            logger.debug(f"Cleared invites for lobby {session_id}")

    def get_pending_invite_ids(self, session_id: str) -> set[int]:
        """Return the users that still hold a live invite for ``session_id``."""
        session_invites = self._invites.get(session_id)
        if not session_invites:
            return set()

        now_ms = self._now_ms()
        return {
            user_id
            for user_id, invite in session_invites.items()
            if not invite.is_expired(now_ms)
        }

    def pending_invites(self, session_id: str) -> list[PendingInvite]:
        """Return live invite entries for ``session_id``."""
        now_ms = self._now_ms()
        return [
            invite
            for invite in self._invites.get(session_id, {}).values()
            if not invite.is_expired(now_ms)
        ]

    def cleanup_expired_invites(self) -> int:
        """Drop every expired entry across all sessions.

        Returns:
            Number of entries removed
        """
        now_ms = self._now_ms()
        removed = 0
        for session_id in list(self._invites):
            session_invites = self._invites[session_id]
            for user_id in [u for u, i in session_invites.items() if i.is_expired(now_ms)]:
                del session_invites[user_id]
                removed += 1
            if not session_invites:
                del self._invites[session_id]

        if removed:
            logger.debug(f"Swept {removed} expired lobby invite(s)")
        return removed

    @property
    def is_sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start_sweeper(self, interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS) -> None:
        """Start the periodic expiry sweep (once per process).

        Must be called from a running event loop. Calling it again while the
        sweep is running is a no-op.
        """
        if self.is_sweeping:
            return
        self.cleanup_expired_invites()
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval))

    async def stop_sweeper(self) -> None:
        """Stop the periodic sweep."""
        task = self._sweep_task
        self._sweep_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.cleanup_expired_invites()
