"""Database models for the local client store."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class ActiveLobbyRecord(Base):
    """Record of the lobby a user is in, kept so it can be resumed or recovered.

    Written when the user enters a lobby and removed by every cleanup path.
    A record that survives a restart means the process exited without
    cleaning up, which crash recovery resolves on the next start.

    Attributes:
        id: Row id
        user_id: Local user
        group_id: Group the lobby belongs to
        session_id: Lobby session id
        initiator_id: Initiator at the time the record was written
        created_at: When the user entered the lobby
        updated_at: Last time the record was written
    """

    __tablename__ = "active_lobbies"
    __table_args__ = (UniqueConstraint("group_id", "user_id", name="uq_active_lobby_group_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    group_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    initiator_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), onupdate=func.now(), nullable=False
    )
