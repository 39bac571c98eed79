"""Local persistence layer."""

from fitlobby.db.models import ActiveLobbyRecord, Base
from fitlobby.db.repositories import ResumeRecordRepository, recover_from_crash
from fitlobby.db.session import create_engine, create_session_factory, init_models

__all__ = [
    "ActiveLobbyRecord",
    "Base",
    "ResumeRecordRepository",
    "create_engine",
    "create_session_factory",
    "init_models",
    "recover_from_crash",
]
