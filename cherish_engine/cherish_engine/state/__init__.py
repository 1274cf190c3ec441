"""State persistence layer using PostgreSQL (SQLite for local mode and tests)."""

from cherish_engine.state.database import get_engine, get_session, set_user_context
from cherish_engine.state.repository import (
    AllowanceRepository,
    CreditSettingsRepository,
    MergeLogRepository,
    MomentRepository,
    PersonDetailRepository,
    PersonRepository,
    RemotePeopleCacheRepository,
    SyncCandidateRepository,
    SyncConflictRepository,
    SyncConnectionRepository,
    SyncCursorRepository,
    SyncLinkRepository,
    SyncOutboxRepository,
    UsageEventRepository,
    UserRoleRepository,
)

__all__ = [
    "AllowanceRepository",
    "CreditSettingsRepository",
    "MergeLogRepository",
    "MomentRepository",
    "PersonDetailRepository",
    "PersonRepository",
    "RemotePeopleCacheRepository",
    "SyncCandidateRepository",
    "SyncConflictRepository",
    "SyncConnectionRepository",
    "SyncCursorRepository",
    "SyncLinkRepository",
    "SyncOutboxRepository",
    "UsageEventRepository",
    "UserRoleRepository",
    "get_engine",
    "get_session",
    "set_user_context",
]
