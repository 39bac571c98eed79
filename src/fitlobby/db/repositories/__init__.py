"""Database repositories."""

from fitlobby.db.repositories.resume import ResumeRecordRepository, recover_from_crash

__all__ = ["ResumeRecordRepository", "recover_from_crash"]
