"""Repository for "resume this lobby" records, plus crash recovery."""

import logging
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fitlobby.db.models import ActiveLobbyRecord
from fitlobby.errors import LobbyClientError, NotFoundError
from fitlobby.lobby.models import LobbySession, SessionStatus

logger = logging.getLogger(__name__)


class ResumeRecordRepository:
    """Repository for managing active lobby records in the local database."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the repository.

        Args:
            session: The database session to use
        """
        self.session = session

    async def save(self, user_id: int, lobby: LobbySession) -> ActiveLobbyRecord:
        """Save or update the record for ``user_id`` in ``lobby``'s group.

        There is at most one record per group and user; entering another
        lobby of the same group overwrites it.

        Args:
            user_id: Local user
            lobby: The lobby the user entered

        Returns:
            The created or updated record
        """
        existing = await self.get(lobby.group_id, user_id)
        if existing is not None:
            existing.session_id = lobby.session_id
            existing.initiator_id = lobby.initiator_id
            await self.session.flush()
            logger.debug(f"Updated resume record for user {user_id} in group {lobby.group_id}")
            return existing

        record = ActiveLobbyRecord(
            user_id=user_id,
            group_id=lobby.group_id,
            session_id=lobby.session_id,
            initiator_id=lobby.initiator_id,
        )
        self.session.add(record)
        await self.session.flush()
        logger.info(f"Saved resume record for lobby {lobby.session_id} (user {user_id})")
        return record

    async def get(self, group_id: int, user_id: int) -> ActiveLobbyRecord | None:
        result = await self.session.execute(
            select(ActiveLobbyRecord).where(
                ActiveLobbyRecord.group_id == group_id,
                ActiveLobbyRecord.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: int) -> list[ActiveLobbyRecord]:
        """Get every record of ``user_id``, oldest first."""
        result = await self.session.execute(
            select(ActiveLobbyRecord)
            .where(ActiveLobbyRecord.user_id == user_id)
            .order_by(ActiveLobbyRecord.created_at, ActiveLobbyRecord.id)
        )
        return list(result.scalars().all())

    async def delete(self, group_id: int, user_id: int) -> bool:
        """Delete the record for a group and user.

        Returns:
            True if a record was deleted
        """
        result = await self.session.execute(
            delete(ActiveLobbyRecord).where(
                ActiveLobbyRecord.group_id == group_id,
                ActiveLobbyRecord.user_id == user_id,
            )
        )
        return result.rowcount > 0

    async def delete_for_session(self, session_id: str, user_id: int) -> int:
        """Delete the records pointing at ``session_id``.

        Returns:
            Number of records deleted
        """
        result = await self.session.execute(
            delete(ActiveLobbyRecord).where(
                ActiveLobbyRecord.session_id == session_id,
                ActiveLobbyRecord.user_id == user_id,
            )
        )
        return result.rowcount


class LobbyRecoveryApi(Protocol):
    """Remote calls crash recovery needs."""

    async def get_lobby_state(self, session_id: str) -> LobbySession: ...

    async def leave_lobby(self, session_id: str) -> None: ...


async def recover_from_crash(
    session_factory: async_sessionmaker[AsyncSession],
    api: LobbyRecoveryApi,
    user_id: int,
) -> int:
    """Resolve resume records left behind by an unclean exit.

    Every record is cleared. When the lobby service still lists the user as a
    member of a running lobby, the user is also removed remotely so that the
    other members stop waiting for them.

    Args:
        session_factory: Local database session factory
        api: Lobby service client
        user_id: Local user

    Returns:
        Number of stale records cleared
    """
    async with session_factory() as session:
        records = await ResumeRecordRepository(session).list_for_user(user_id)
        stale = [(r.group_id, r.session_id) for r in records]

    if not stale:
        logger.info("Crash recovery: no stale lobbies found")
        return 0

    logger.info(f"Crash recovery: found {len(stale)} stale lobby record(s)")

    for group_id, session_id in stale:
        try:
            state = await api.get_lobby_state(session_id)
        except NotFoundError:
            logger.info(f"Crash recovery: lobby {session_id} no longer exists")
        except LobbyClientError as e:
            logger.warning(f"Crash recovery: could not check lobby {session_id}: {e}")
        else:
            if state.status != SessionStatus.COMPLETED and state.member(user_id) is not None:
                try:
                    await api.leave_lobby(session_id)
                    logger.info(f"Crash recovery: left lobby {session_id}")
                except LobbyClientError as e:
                    logger.warning(f"Crash recovery: failed to leave lobby {session_id}: {e}")

        async with session_factory() as session:
            await ResumeRecordRepository(session).delete(group_id, user_id)
            await session.commit()

    return len(stale)
