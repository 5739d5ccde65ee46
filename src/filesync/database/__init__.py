"""Persistence layer: SQLAlchemy tables, transfer objects and repositories."""

from .database import DatabaseManager, get_db_manager, init_database, close_database
from .models import (
    Base,
    FileInfoModel,
    DirectoryInfoModel,
    SyncMappingModel,
    PendingActionModel,
    BlacklistRuleModel,
    FileKey,
    FileRecord,
    DirectoryRecord,
    SyncMapping,
    SyncMappingCreate,
    PendingSyncAction,
    PendingActionCreate,
    BlacklistRule,
    ItemError,
    ServiceType,
    ActionKind,
    SyncDirection,
    ActionStatus,
    BlacklistMatchType,
    utcnow
)

__all__ = [
    "DatabaseManager",
    "get_db_manager",
    "init_database",
    "close_database",
    "Base",
    "FileInfoModel",
    "DirectoryInfoModel",
    "SyncMappingModel",
    "PendingActionModel",
    "BlacklistRuleModel",
    "FileKey",
    "FileRecord",
    "DirectoryRecord",
    "SyncMapping",
    "SyncMappingCreate",
    "PendingSyncAction",
    "PendingActionCreate",
    "BlacklistRule",
    "ItemError",
    "ServiceType",
    "ActionKind",
    "SyncDirection",
    "ActionStatus",
    "BlacklistMatchType",
    "utcnow"
]
