"""Tests for resume records and crash recovery."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fakes import FakeLobbyService, make_session
from fitlobby.api.client import LobbyApiClient
from fitlobby.db.repositories.resume import ResumeRecordRepository, recover_from_crash


class TestResumeRecordRepository:
    """Tests for ResumeRecordRepository."""

    @pytest.mark.asyncio
    async def test_save_and_get(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """Test saving a record and reading it back."""
        async with session_factory() as session:
            repo = ResumeRecordRepository(session)
            await repo.save(1, make_session())
            await session.commit()

        async with session_factory() as session:
            record = await ResumeRecordRepository(session).get(10, 1)

        assert record is not None
        assert record.session_id == "lobby-1"
        assert record.initiator_id == 1

    @pytest.mark.asyncio
    async def test_save_overwrites_same_group(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """Test that a user has one record per group."""
        async with session_factory() as session:
            repo = ResumeRecordRepository(session)
            first = await repo.save(1, make_session())
            second = await repo.save(
                1, make_session(session_id="lobby-2", initiator_id=2, members=[(2, "b", "ready")])
            )
            await session.commit()

            records = await repo.list_for_user(1)

        assert second.id == first.id
        assert len(records) == 1
        assert records[0].session_id == "lobby-2"
        assert records[0].initiator_id == 2

    @pytest.mark.asyncio
    async def test_list_for_user(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Test that records are listed per user."""
        async with session_factory() as session:
            repo = ResumeRecordRepository(session)
            await repo.save(1, make_session(group_id=10))
            await repo.save(1, make_session(session_id="lobby-2", group_id=20))
            await repo.save(2, make_session(session_id="lobby-3", group_id=10, initiator_id=2))
            await session.commit()

            records = await repo.list_for_user(1)

        assert {r.session_id for r in records} == {"lobby-1", "lobby-2"}

    @pytest.mark.asyncio
    async def test_delete(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Test deleting by group and by session."""
        async with session_factory() as session:
            repo = ResumeRecordRepository(session)
            await repo.save(1, make_session(group_id=10))
            await repo.save(1, make_session(session_id="lobby-2", group_id=20))
            await session.commit()

            assert await repo.delete(10, 1)
            assert not await repo.delete(10, 1)
            assert await repo.delete_for_session("lobby-2", 1) == 1
            await session.commit()

            assert await repo.list_for_user(1) == []


class TestCrashRecovery:
    """Tests for recover_from_crash."""

    @pytest.mark.asyncio
    async def test_nothing_to_recover(
        self, session_factory: async_sessionmaker[AsyncSession], api: LobbyApiClient
    ) -> None:
        """Test that a clean store needs no recovery."""
        assert await recover_from_crash(session_factory, api, 1) == 0

    @pytest.mark.asyncio
    async def test_leaves_active_lobby(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        api: LobbyApiClient,
        lobby_service: FakeLobbyService,
    ) -> None:
        """Test that a lobby still listing the user is left remotely."""
        lobby = make_session(members=[(1, "Ann", "ready"), (2, "Bob", "waiting")])
        lobby_service.seed(lobby)
        async with session_factory() as session:
            await ResumeRecordRepository(session).save(1, lobby)
            await session.commit()

        cleared = await recover_from_crash(session_factory, api, 1)

        assert cleared == 1
        assert ("POST", "/api/v2/lobby/lobby-1/leave") in lobby_service.requests
        assert [m["user_id"] for m in lobby_service.lobbies["lobby-1"]["members"]] == [2]
        async with session_factory() as session:
            assert await ResumeRecordRepository(session).list_for_user(1) == []

    @pytest.mark.asyncio
    async def test_missing_lobby_is_cleared(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        api: LobbyApiClient,
        lobby_service: FakeLobbyService,
    ) -> None:
        """Test that a record of a vanished lobby is only cleared locally."""
        async with session_factory() as session:
            await ResumeRecordRepository(session).save(1, make_session(session_id="gone"))
            await session.commit()

        cleared = await recover_from_crash(session_factory, api, 1)

        assert cleared == 1
        assert ("POST", "/api/v2/lobby/gone/leave") not in lobby_service.requests
        async with session_factory() as session:
            assert await ResumeRecordRepository(session).get(10, 1) is None

    @pytest.mark.asyncio
    async def test_unreachable_service_still_clears(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        api: LobbyApiClient,
        lobby_service: FakeLobbyService,
    ) -> None:
        """Test that a failed state check does not keep the record."""
        async with session_factory() as session:
            await ResumeRecordRepository(session).save(1, make_session())
            await session.commit()
        lobby_service.fail_next = [(500, {"status": "error", "message": "down"}, {})]

        assert await recover_from_crash(session_factory, api, 1) == 1

        async with session_factory() as session:
            assert await ResumeRecordRepository(session).list_for_user(1) == []
