"""Typed guards standing in for locks in the single-threaded controller.

Two asynchronous callbacks can interleave between a read of lobby state and
a later write, so each at-most-once side effect is protected by an explicit
guard object rather than a loose boolean.
"""

from enum import Enum


class CleanupPhase(Enum):
    ACTIVE = "active"
    CLEANING = "cleaning"
    CLEANED = "cleaned"


class CleanupReason(Enum):
    """Why a lobby is being torn down."""

    LEFT = "left"
    KICKED = "kicked"
    DELETED = "deleted"
    UNMOUNTED = "unmounted"
    WORKOUT_STARTED = "workout_started"

    @property
    def requires_remote_leave(self) -> bool:
        """Whether the lobby service still believes the user is present."""
        return self in (CleanupReason.LEFT, CleanupReason.UNMOUNTED)


class CleanupGuard:
    """Re-entrancy guard for the cleanup sequence.

    ``begin`` succeeds exactly once; every later call returns False, whether
    cleanup is still running or already finished.
    """

    def __init__(self) -> None:
        self.phase = CleanupPhase.ACTIVE
        self.reason: CleanupReason | None = None
        self.remote_leave_issued = False

    @property
    def is_active(self) -> bool:
        return self.phase == CleanupPhase.ACTIVE

    def begin(self, reason: CleanupReason) -> bool:
        if self.phase != CleanupPhase.ACTIVE:
            return False
        self.phase = CleanupPhase.CLEANING
        self.reason = reason
        return True

    def finish(self) -> None:
        self.phase = CleanupPhase.CLEANED

    def claim_remote_leave(self) -> bool:
        """Reserve the single remote leave call.

        Returns:
            True for the first caller only
        """
        if self.remote_leave_issued:
            return False
        self.remote_leave_issued = True
        return True

    def reset(self) -> None:
        self.phase = CleanupPhase.ACTIVE
        self.reason = None
        self.remote_leave_issued = False


class EdgeTrigger:
    """Fires on the transition of a condition from false to true.

    The trigger re-arms only after the condition has been observed false
    again, or when ``rearm`` is called explicitly after a failed attempt.
    """

    def __init__(self) -> None:
        self._armed = True
        self.in_flight = False

    def evaluate(self, condition: bool) -> bool:
        """Observe the condition.

        Returns:
            True when the caller should fire now
        """
        if not condition:
            if not self.in_flight:
                self._armed = True
            return False
        if not self._armed or self.in_flight:
            return False
        self._armed = False
        self.in_flight = True
        return True

    def done(self) -> None:
        self.in_flight = False

    def rearm(self) -> None:
        self.in_flight = False
        self._armed = True


class GenerationGuard:
    """Detects async results that belong to a superseded lobby attachment.

    ``token`` is captured before an await; ``is_current(token)`` after the
    await tells whether the lobby it was issued for is still attached.
    """

    def __init__(self) -> None:
        self._generation = 0

    @property
    def token(self) -> int:
        return self._generation

    def advance(self) -> int:
        self._generation += 1
        return self._generation

    def is_current(self, token: int) -> bool:
        return token == self._generation
