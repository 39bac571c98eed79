"""Tests for the InviteTracker."""

import asyncio

import pytest

from fakes import FakeClock
from fitlobby.lobby.invites import InviteTracker


@pytest.fixture
def tracker(clock: FakeClock) -> InviteTracker:
    return InviteTracker(clock=clock, ttl_seconds=300)


class TestTrackInvite:
    """Tests for tracking and clearing invites."""

    def test_tracked_invite_is_pending(self, tracker: InviteTracker) -> None:
        """Test that a tracked user shows up as pending."""
        tracker.track_invite("s1", 42)

        assert tracker.get_pending_invite_ids("s1") == {42}

    def test_sessions_are_independent(self, tracker: InviteTracker) -> None:
        """Test that invites for one session do not leak into another."""
        tracker.track_invite("s1", 42)
        tracker.track_invite("s2", 7)

        assert tracker.get_pending_invite_ids("s1") == {42}
        assert tracker.get_pending_invite_ids("s2") == {7}
        assert tracker.get_pending_invite_ids("s3") == set()

    def test_retrack_refreshes_expiry(self, tracker: InviteTracker, clock: FakeClock) -> None:
        """Test that tracking the same pair again keeps one entry with a new expiry."""
        first = tracker.track_invite("s1", 42)
        clock.advance(200)
        second = tracker.track_invite("s1", 42)

        assert second.expires_at_ms == first.expires_at_ms + 200_000
        assert len(tracker.pending_invites("s1")) == 1

        clock.advance(200)
        assert tracker.get_pending_invite_ids("s1") == {42}

    def test_clear_invite_for_user(self, tracker: InviteTracker) -> None:
        """Test that an observed join makes the user invitable again."""
        tracker.track_invite("s1", 42)
        tracker.track_invite("s1", 43)

        tracker.clear_invite_for_user("s1", 42)

        assert tracker.get_pending_invite_ids("s1") == {43}

    def test_clear_unknown_user_is_noop(self, tracker: InviteTracker) -> None:
        """Test clearing an invite that was never tracked."""
        tracker.clear_invite_for_user("missing", 1)

        assert tracker.get_pending_invite_ids("missing") == set()

    def test_clear_invite_session(self, tracker: InviteTracker) -> None:
        """Test that clearing a session forgets all of its invites."""
        tracker.track_invite("s1", 42)
        tracker.track_invite("s1", 43)
        tracker.track_invite("s2", 44)

        tracker.clear_invite_session("s1")

        assert tracker.get_pending_invite_ids("s1") == set()
        assert tracker.get_pending_invite_ids("s2") == {44}


class TestExpiry:
    """Tests for TTL handling."""

    def test_expired_invite_is_absent_before_sweep(
        self, tracker: InviteTracker, clock: FakeClock
    ) -> None:
        """Test that reads ignore expired entries even if no sweep ran."""
        tracker.track_invite("s1", 42)

        clock.advance(299)
        assert tracker.get_pending_invite_ids("s1") == {42}

        clock.advance(1)
        assert tracker.get_pending_invite_ids("s1") == set()
        assert tracker.pending_invites("s1") == []

    def test_cleanup_expired_invites(self, tracker: InviteTracker, clock: FakeClock) -> None:
        """Test that the sweep removes only expired entries across sessions."""
        tracker.track_invite("s1", 1)
        tracker.track_invite("s2", 2)
        clock.advance(200)
        tracker.track_invite("s1", 3)
        clock.advance(150)

        removed = tracker.cleanup_expired_invites()

        assert removed == 2
        assert tracker.get_pending_invite_ids("s1") == {3}
        assert tracker.get_pending_invite_ids("s2") == set()

    def test_cleanup_with_nothing_expired(self, tracker: InviteTracker) -> None:
        """Test the sweep on live entries."""
        tracker.track_invite("s1", 1)

        assert tracker.cleanup_expired_invites() == 0
        assert tracker.get_pending_invite_ids("s1") == {1}


class TestSweeper:
    """Tests for the periodic sweep task."""

    @pytest.mark.asyncio
    async def test_sweeper_runs_periodically(
        self, tracker: InviteTracker, clock: FakeClock
    ) -> None:
        """Test that the background sweep removes expired entries."""
        tracker.track_invite("s1", 1)
        clock.advance(301)

        tracker.start_sweeper(interval=0.01)
        assert tracker.is_sweeping
        await asyncio.sleep(0.05)

        assert tracker.pending_invites("s1") == []
        assert tracker._invites == {}
        await tracker.stop_sweeper()
        assert not tracker.is_sweeping

    @pytest.mark.asyncio
    async def test_start_sweeper_twice_is_noop(self, tracker: InviteTracker) -> None:
        """Test that only one sweep task runs."""
        tracker.start_sweeper(interval=10)
        task = tracker._sweep_task
        tracker.start_sweeper(interval=10)

        assert tracker._sweep_task is task
        await tracker.stop_sweeper()

    @pytest.mark.asyncio
    async def test_stop_sweeper_without_start(self, tracker: InviteTracker) -> None:
        """Test stopping a sweeper that never started."""
        await tracker.stop_sweeper()

        assert not tracker.is_sweeping
