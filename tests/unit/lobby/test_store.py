"""Tests for the LobbyStateStore."""

import pytest

from fakes import make_session
from fitlobby.errors import CorruptSessionError
from fitlobby.lobby.models import LobbySession, Member, MemberStatus, WorkoutData
from fitlobby.lobby.store import LobbyStateStore, StoreSnapshot

TWO_MEMBERS = [(1, "Ann", "waiting"), (2, "Bob", "waiting")]


@pytest.fixture
def store() -> LobbyStateStore:
    return LobbyStateStore()


class TestSetSession:
    """Tests for authoritative replacement."""

    def test_set_session(self, store: LobbyStateStore) -> None:
        """Test that a valid session becomes the view."""
        session = make_session(members=TWO_MEMBERS)

        store.set_session(session)

        assert store.session == session
        assert store.session_id == "lobby-1"
        assert store.member_count == 2
        assert store.initiator_id == 1
        assert store.is_initiator(1)
        assert not store.is_initiator(2)
        assert not store.needs_resync

    def test_corrupt_session_is_discarded(self, store: LobbyStateStore) -> None:
        """Test that a session whose initiator is not a member is never exposed."""
        store.set_session(make_session(members=TWO_MEMBERS))
        corrupt = make_session(initiator_id=9, members=TWO_MEMBERS)

        with pytest.raises(CorruptSessionError):
            store.set_session(corrupt)

        assert store.session is None
        assert store.committed is None
        assert store.needs_resync

    def test_valid_session_clears_resync(self, store: LobbyStateStore) -> None:
        """Test that the next valid broadcast recovers from a corrupt one."""
        with pytest.raises(CorruptSessionError):
            store.set_session(make_session(initiator_id=9, members=TWO_MEMBERS))

        store.set_session(make_session(members=TWO_MEMBERS))

        assert not store.needs_resync
        assert store.session is not None

    def test_duplicate_member_ids_rejected(self) -> None:
        """Test that the model refuses duplicate member ids."""
        with pytest.raises(ValueError):
            make_session(members=[(1, "Ann", "waiting"), (1, "Ann again", "ready")])

    def test_null_workout_data(self) -> None:
        """Test that a null plan from the wire parses as an empty plan."""
        session = LobbySession.model_validate(
            {
                "session_id": "s1",
                "group_id": 1,
                "initiator_id": 1,
                "workout_data": None,
                "members": [{"user_id": 1, "user_name": "Ann", "status": "ready"}],
            }
        )

        assert not session.has_exercises
        assert session.members[0].display_name == "Ann"
        assert session.all_ready


class TestAdvisoryUpdates:
    """Tests for the pending-local tier."""

    def test_update_member_status_is_visible(self, store: LobbyStateStore) -> None:
        """Test that an optimistic toggle shows in the merged view only."""
        store.set_session(make_session(members=TWO_MEMBERS))

        store.update_member_status(1, MemberStatus.READY)

        assert store.is_member_ready(1)
        assert store.committed.member(1).status == MemberStatus.WAITING
        assert store.has_pending_local

    def test_authoritative_broadcast_wins(self, store: LobbyStateStore) -> None:
        """Test that a broadcast replaces any advisory value for the same field."""
        store.set_session(make_session(members=TWO_MEMBERS))
        store.update_member_status(1, MemberStatus.READY)

        store.set_session(make_session(members=TWO_MEMBERS, version=2))

        assert not store.is_member_ready(1)
        assert not store.has_pending_local

    def test_add_and_remove_member(self, store: LobbyStateStore) -> None:
        """Test the escape hatches for fine-grained events."""
        store.set_session(make_session(members=TWO_MEMBERS))

        store.add_member(Member(user_id=3, display_name="Cid"))
        assert store.member_count == 3
        assert store.member(3).display_name == "Cid"

        store.remove_member(2)
        assert [m.user_id for m in store.members] == [1, 3]

    def test_add_existing_member_is_noop(self, store: LobbyStateStore) -> None:
        """Test that adding a committed member does not duplicate it."""
        store.set_session(make_session(members=TWO_MEMBERS))

        store.add_member(Member(user_id=2, display_name="Bob"))

        assert store.member_count == 2

    def test_removing_initiator_requires_resync(self, store: LobbyStateStore) -> None:
        """Test that the view is never partially valid."""
        store.set_session(make_session(members=TWO_MEMBERS))

        store.remove_member(1)

        assert store.session is None
        assert store.needs_resync
        assert store.committed is not None

    def test_local_workout_data(self, store: LobbyStateStore) -> None:
        """Test an advisory plan change."""
        store.set_session(make_session(members=TWO_MEMBERS, exercises=True))

        store.set_local_workout_data(WorkoutData())

        assert not store.has_exercises
        assert store.committed.has_exercises

    def test_mutations_without_session_are_ignored(self, store: LobbyStateStore) -> None:
        """Test advisory mutations before any session exists."""
        store.update_member_status(1, MemberStatus.READY)
        store.add_member(Member(user_id=3))
        store.remove_member(3)

        assert store.session is None
        assert store.version == 0


class TestVersionAndListeners:
    """Tests for the version counter and listeners."""

    def test_every_mutation_bumps_version(self, store: LobbyStateStore) -> None:
        """Test that the version counter is monotonic across mutations."""
        versions = [store.version]
        store.set_session(make_session(members=TWO_MEMBERS))
        versions.append(store.version)
        store.update_member_status(1, MemberStatus.READY)
        versions.append(store.version)
        store.clear()
        versions.append(store.version)

        assert versions == sorted(set(versions))
        assert len(versions) == 4

    def test_listener_receives_snapshots(self, store: LobbyStateStore) -> None:
        """Test that listeners see every mutation until they unsubscribe."""
        seen: list[StoreSnapshot] = []
        unsubscribe = store.subscribe(seen.append)

        store.set_session(make_session(members=TWO_MEMBERS))
        store.clear()
        unsubscribe()
        store.set_session(make_session(members=TWO_MEMBERS))

        assert len(seen) == 2
        assert seen[0].session is not None
        assert seen[1].session is None
        assert seen[1].version > seen[0].version

    def test_failing_listener_does_not_block_others(self, store: LobbyStateStore) -> None:
        """Test that a listener error is contained."""
        seen: list[StoreSnapshot] = []

        def broken(snapshot: StoreSnapshot) -> None:
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.subscribe(seen.append)
        store.set_session(make_session(members=TWO_MEMBERS))

        assert len(seen) == 1

    def test_clear(self, store: LobbyStateStore) -> None:
        """Test that clear discards all state."""
        store.set_session(make_session(members=TWO_MEMBERS))
        store.update_member_status(2, MemberStatus.READY)

        store.clear()

        assert store.session is None
        assert store.committed is None
        assert store.members == ()
        assert not store.all_members_ready
        assert not store.has_pending_local
