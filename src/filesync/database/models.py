"""Database models for the sync cache."""

from datetime import datetime, timezone
from typing import Optional, NamedTuple
from enum import Enum
import uuid

from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Boolean, Text, ForeignKey,
    UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base
from pydantic import BaseModel, Field


Base = declarative_base()

URL_LENGTH = 2048


def utcnow() -> datetime:
    """Naive UTC now; every timestamp column is stored naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_action_id() -> str:
    return str(uuid.uuid4())


class ServiceType(str, Enum):
    """Supported storage backends."""
    LOCAL = "local"
    S3 = "s3"
    GDRIVE = "gdrive"


class ActionKind(str, Enum):
    """What a pending action does to its destination."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncDirection(str, Enum):
    """Forward copies mapping source to destination; reverse the other way."""
    FORWARD = "forward"
    REVERSE = "reverse"


class ActionStatus(str, Enum):
    """Lifecycle of a queued action."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"


class BlacklistMatchType(str, Enum):
    """How a blacklist rule is matched against a URL."""
    PREFIX = "prefix"
    SUBSTRING = "substring"
    GLOB = "glob"


# SQLAlchemy Models (Database Tables)

class FileInfoModel(Base):
    """Observed file metadata and digests, one row per backend entry."""

    __tablename__ = "file_info_cache"
    __table_args__ = (
        UniqueConstraint(
            "filename", "filepath", "urlname", "serviceid", "servicetype", "servicesession",
            name="uq_file_info_identity"
        ),
        Index("ix_file_info_scope_url", "servicetype", "servicesession", "urlname"),
    )

    id = Column(Integer, primary_key=True, index=True)
    filename = Column(String(1024), nullable=False)
    filepath = Column(String(URL_LENGTH), nullable=False)
    urlname = Column(String(URL_LENGTH), nullable=False)
    md5sum = Column(String(32), nullable=True)
    sha1sum = Column(String(40), nullable=True)
    filestat_st_mtime = Column(BigInteger, nullable=False)
    filestat_st_size = Column(BigInteger, nullable=False)
    filestat_backend_mtime = Column(BigInteger, nullable=True)
    serviceid = Column(String(URL_LENGTH), nullable=False)
    servicetype = Column(String(20), nullable=False)
    servicesession = Column(String(URL_LENGTH), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<FileInfoModel(id={self.id}, urlname='{self.urlname}', deleted={self.deleted_at is not None})>"


class DirectoryInfoModel(Base):
    """Folder id to name/parent translation for hierarchical backends."""

    __tablename__ = "directory_info_cache"
    __table_args__ = (
        UniqueConstraint("directory_id", "servicetype", "servicesession", name="uq_directory_identity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    directory_id = Column(String(255), nullable=False)
    directory_name = Column(String(1024), nullable=False)
    parent_id = Column(String(255), nullable=True)
    is_root = Column(Boolean, default=False, nullable=False)
    servicetype = Column(String(20), nullable=False)
    servicesession = Column(String(URL_LENGTH), nullable=False)

    def __repr__(self):
        return f"<DirectoryInfoModel(directory_id='{self.directory_id}', name='{self.directory_name}')>"


class SyncMappingModel(Base):
    """A configured (src_url, dst_url) pair."""

    __tablename__ = "file_sync_config"
    __table_args__ = (
        UniqueConstraint("src_url", "dst_url", name="uq_sync_mapping_urls"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=True, unique=True)
    src_url = Column(String(URL_LENGTH), nullable=False)
    dst_url = Column(String(URL_LENGTH), nullable=False)
    bidirectional = Column(Boolean, default=False, nullable=False)
    last_run = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<SyncMappingModel(id={self.id}, src='{self.src_url}', dst='{self.dst_url}')>"


class PendingActionModel(Base):
    """Queued transfer or delete awaiting execution."""

    __tablename__ = "file_sync_cache"
    __table_args__ = (
        UniqueConstraint("src_url", "dst_url", name="uq_pending_action_pair"),
    )

    id = Column(String(36), primary_key=True, default=new_action_id)
    src_url = Column(String(URL_LENGTH), nullable=False)
    dst_url = Column(String(URL_LENGTH), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    action = Column(String(10), nullable=False)
    direction = Column(String(10), default=SyncDirection.FORWARD.value, nullable=False)
    mapping_id = Column(Integer, ForeignKey("file_sync_config.id", ondelete="SET NULL"), nullable=True, index=True)

    # Execution tracking
    status = Column(String(20), default=ActionStatus.PENDING.value, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    next_attempt_at = Column(DateTime, default=utcnow, nullable=False)
    last_error = Column(Text, nullable=True)
    error_kind = Column(String(50), nullable=True)
    needs_attention = Column(Boolean, default=False, nullable=False)

    def __repr__(self):
        return f"<PendingActionModel(id='{self.id}', action='{self.action}', status='{self.status}')>"


class BlacklistRuleModel(Base):
    """URL exclusion rule."""

    __tablename__ = "file_sync_blacklist"
    __table_args__ = (
        UniqueConstraint("blacklist_url", "match_type", name="uq_blacklist_rule"),
    )

    id = Column(Integer, primary_key=True, index=True)
    blacklist_url = Column(String(URL_LENGTH), nullable=False)
    match_type = Column(String(20), default=BlacklistMatchType.PREFIX.value, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


# Pydantic Models (Transfer Objects)

class FileKey(NamedTuple):
    """Identity tuple of a FileRecord."""
    filename: str
    filepath: str
    urlname: str
    serviceid: str
    servicetype: str
    servicesession: str


class FileRecord(BaseModel):
    """Cached metadata for one file."""
    id: Optional[int] = None
    filename: str
    filepath: str
    urlname: str
    serviceid: str
    servicetype: ServiceType
    servicesession: str
    md5sum: Optional[str] = None
    sha1sum: Optional[str] = None
    filestat_st_mtime: int
    filestat_st_size: int
    filestat_backend_mtime: Optional[int] = None
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def key(self) -> FileKey:
        return FileKey(
            self.filename, self.filepath, self.urlname,
            self.serviceid, self.servicetype.value, self.servicesession
        )

    def is_stale(self, size: int, mtime: int) -> bool:
        """True when the observed size/mtime no longer match this record."""
        return (
            self.deleted_at is not None
            or self.filestat_st_size != size
            or self.filestat_st_mtime != mtime
        )


class DirectoryRecord(BaseModel):
    """Folder node of a hierarchical backend."""
    directory_id: str
    directory_name: str
    parent_id: Optional[str] = None
    is_root: bool = False
    servicetype: ServiceType = ServiceType.GDRIVE
    servicesession: str

    class Config:
        from_attributes = True


class SyncMapping(BaseModel):
    """Configured source/destination pair."""
    id: int
    name: Optional[str] = None
    src_url: str
    dst_url: str
    bidirectional: bool = False
    last_run: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncMappingCreate(BaseModel):
    """Input for registering a mapping."""
    src_url: str
    dst_url: str
    name: Optional[str] = None
    bidirectional: bool = False


class PendingSyncAction(BaseModel):
    """A queued action as seen by callers."""
    id: str
    src_url: str
    dst_url: str
    created_at: datetime
    action: ActionKind
    direction: SyncDirection = SyncDirection.FORWARD
    mapping_id: Optional[int] = None
    status: ActionStatus = ActionStatus.PENDING
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    needs_attention: bool = False

    class Config:
        from_attributes = True


class PendingActionCreate(BaseModel):
    """Input for enqueuing an action."""
    src_url: str
    dst_url: str
    action: ActionKind
    direction: SyncDirection = SyncDirection.FORWARD
    mapping_id: Optional[int] = None


class BlacklistRule(BaseModel):
    """URL exclusion rule."""
    id: Optional[int] = None
    blacklist_url: str
    match_type: BlacklistMatchType = BlacklistMatchType.PREFIX

    class Config:
        from_attributes = True


class ItemError(BaseModel):
    """Per item failure collected in pass results."""
    identity: str
    kind: str
    message: str
    occurred_at: datetime = Field(default_factory=utcnow)
