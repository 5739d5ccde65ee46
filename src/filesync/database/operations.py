"""Database operations and repository classes."""

from datetime import datetime
from typing import List, Optional, Iterable

from sqlalchemy.orm import Session
from sqlalchemy import or_, update, delete

from .models import (
    FileInfoModel, DirectoryInfoModel, SyncMappingModel, PendingActionModel, BlacklistRuleModel,
    FileRecord, FileKey, DirectoryRecord, SyncMappingCreate, PendingActionCreate, BlacklistRule,
    ActionStatus, utcnow
)
from ..utils.logging import get_logger, log_execution_time


logger = get_logger("database.operations")


class FileInfoRepository:
    """Repository for file_info_cache rows."""

    def __init__(self, session: Session):
        self.session = session

    def _scope(self, servicetype: str, servicesession: str):
        return self.session.query(FileInfoModel).filter(
            FileInfoModel.servicetype == servicetype,
            FileInfoModel.servicesession == servicesession
        )

    def get_by_identity(self, key: FileKey) -> Optional[FileInfoModel]:
        """Get the row for an identity tuple, soft-deleted or not."""
        return self._scope(key.servicetype, key.servicesession).filter(
            FileInfoModel.urlname == key.urlname,
            FileInfoModel.filename == key.filename,
            FileInfoModel.filepath == key.filepath,
            FileInfoModel.serviceid == key.serviceid
        ).first()

    def get_live_by_url(self, servicetype: str, servicesession: str, urlname: str) -> Optional[FileInfoModel]:
        return self._scope(servicetype, servicesession).filter(
            FileInfoModel.urlname == urlname,
            FileInfoModel.deleted_at.is_(None)
        ).first()

    def get_by_id(self, record_id: int) -> Optional[FileInfoModel]:
        return self.session.query(FileInfoModel).filter(FileInfoModel.id == record_id).first()

    @log_execution_time
    def upsert(self, record: FileRecord) -> FileInfoModel:
        """Insert or replace by identity, reviving soft-deleted rows.

        Any other live row for the same URL is soft-deleted so that a URL
        never has two live identities (a drive file re-created under a new id).
        """
        key = record.key
        values = dict(
            md5sum=record.md5sum,
            sha1sum=record.sha1sum,
            filestat_st_mtime=record.filestat_st_mtime,
            filestat_st_size=record.filestat_st_size,
            filestat_backend_mtime=record.filestat_backend_mtime,
            deleted_at=None
        )

        row = self.get_by_identity(key)
        if row is None:
            # A concurrent insert of the same identity surfaces as IntegrityError on flush
            row = FileInfoModel(
                filename=key.filename,
                filepath=key.filepath,
                urlname=key.urlname,
                serviceid=key.serviceid,
                servicetype=key.servicetype,
                servicesession=key.servicesession,
                **values
            )
            self.session.add(row)
        else:
            for field, value in values.items():
                setattr(row, field, value)

        now = utcnow()
        self._scope(key.servicetype, key.servicesession).filter(
            FileInfoModel.urlname == key.urlname,
            FileInfoModel.deleted_at.is_(None),
            FileInfoModel.serviceid != key.serviceid
        ).update({FileInfoModel.deleted_at: now}, synchronize_session=False)

        self.session.flush()
        return row

    def list_scope(
        self,
        servicetype: str,
        servicesession: str,
        url_prefix: Optional[str] = None,
        include_deleted: bool = False
    ) -> List[FileInfoModel]:
        query = self._scope(servicetype, servicesession)
        if url_prefix:
            query = query.filter(FileInfoModel.urlname.startswith(url_prefix, autoescape=True))
        if not include_deleted:
            query = query.filter(FileInfoModel.deleted_at.is_(None))
        return query.all()

    @log_execution_time
    def soft_delete_missing(
        self,
        servicetype: str,
        servicesession: str,
        url_prefix: str,
        seen_urls: Iterable[str]
    ) -> int:
        """Soft delete live rows under a prefix whose URL was not seen."""
        seen = set(seen_urls)
        now = utcnow()
        count = 0
        for row in self.list_scope(servicetype, servicesession, url_prefix):
            if row.urlname not in seen:
                row.deleted_at = now
                count += 1
        self.session.flush()
        return count

    def soft_delete_url(self, servicetype: str, servicesession: str, urlname: str) -> int:
        return self._scope(servicetype, servicesession).filter(
            FileInfoModel.urlname == urlname,
            FileInfoModel.deleted_at.is_(None)
        ).update({FileInfoModel.deleted_at: utcnow()}, synchronize_session=False)

    def delete_by_identity(self, key: FileKey) -> bool:
        row = self.get_by_identity(key)
        if row is None:
            return False
        self.session.delete(row)
        return True

    def delete_by_id(self, record_id: int) -> bool:
        row = self.get_by_id(record_id)
        if row is None:
            return False
        self.session.delete(row)
        logger.info("File cache record deleted", record_id=record_id, urlname=row.urlname)
        return True

    def list_records(
        self,
        servicetype: Optional[str] = None,
        include_deleted: bool = False,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[FileInfoModel]:
        query = self.session.query(FileInfoModel)
        if servicetype:
            query = query.filter(FileInfoModel.servicetype == servicetype)
        if not include_deleted:
            query = query.filter(FileInfoModel.deleted_at.is_(None))
        query = query.order_by(FileInfoModel.urlname).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return query.all()


class DirectoryRepository:
    """Repository for directory_info_cache rows."""

    def __init__(self, session: Session):
        self.session = session

    def list_scope(self, servicetype: str, servicesession: str) -> List[DirectoryInfoModel]:
        return self.session.query(DirectoryInfoModel).filter(
            DirectoryInfoModel.servicetype == servicetype,
            DirectoryInfoModel.servicesession == servicesession
        ).all()

    def get(self, directory_id: str, servicetype: str, servicesession: str) -> Optional[DirectoryInfoModel]:
        return self.session.query(DirectoryInfoModel).filter(
            DirectoryInfoModel.directory_id == directory_id,
            DirectoryInfoModel.servicetype == servicetype,
            DirectoryInfoModel.servicesession == servicesession
        ).first()

    def upsert(self, record: DirectoryRecord) -> DirectoryInfoModel:
        servicetype = record.servicetype.value
        row = self.get(record.directory_id, servicetype, record.servicesession)
        if row is None:
            row = DirectoryInfoModel(
                directory_id=record.directory_id,
                servicetype=servicetype,
                servicesession=record.servicesession
            )
            self.session.add(row)
        row.directory_name = record.directory_name
        row.parent_id = record.parent_id
        row.is_root = record.is_root
        self.session.flush()
        return row

    def delete(self, directory_id: str, servicetype: str, servicesession: str) -> bool:
        row = self.get(directory_id, servicetype, servicesession)
        if row is None:
            return False
        self.session.delete(row)
        return True

    @log_execution_time
    def replace_scope(self, servicetype: str, servicesession: str, records: List[DirectoryRecord]) -> int:
        """Replace every node of a scope with ``records``."""
        self.session.execute(
            delete(DirectoryInfoModel).where(
                DirectoryInfoModel.servicetype == servicetype,
                DirectoryInfoModel.servicesession == servicesession
            )
        )
        self.session.add_all([
            DirectoryInfoModel(
                directory_id=r.directory_id,
                directory_name=r.directory_name,
                parent_id=r.parent_id,
                is_root=r.is_root,
                servicetype=servicetype,
                servicesession=servicesession
            )
            for r in records
        ])
        self.session.flush()
        return len(records)


class SyncMappingRepository:
    """Repository for file_sync_config rows."""

    def __init__(self, session: Session):
        self.session = session

    @log_execution_time
    def create(self, data: SyncMappingCreate) -> SyncMappingModel:
        mapping = SyncMappingModel(
            name=data.name,
            src_url=data.src_url,
            dst_url=data.dst_url,
            bidirectional=data.bidirectional
        )
        self.session.add(mapping)
        self.session.flush()

        logger.info("Sync mapping created", mapping_id=mapping.id, src_url=data.src_url, dst_url=data.dst_url)
        return mapping

    def get_by_id(self, mapping_id: int) -> Optional[SyncMappingModel]:
        return self.session.query(SyncMappingModel).filter(SyncMappingModel.id == mapping_id).first()

    def get_by_name(self, name: str) -> Optional[SyncMappingModel]:
        return self.session.query(SyncMappingModel).filter(SyncMappingModel.name == name).first()

    def get_by_urls(self, src_url: str, dst_url: str) -> Optional[SyncMappingModel]:
        return self.session.query(SyncMappingModel).filter(
            SyncMappingModel.src_url == src_url,
            SyncMappingModel.dst_url == dst_url
        ).first()

    def get_all(self) -> List[SyncMappingModel]:
        return self.session.query(SyncMappingModel).order_by(SyncMappingModel.id).all()

    def update_last_run(self, mapping_id: int, last_run: datetime) -> bool:
        mapping = self.get_by_id(mapping_id)
        if not mapping:
            return False
        mapping.last_run = last_run
        return True

    def delete(self, mapping_id: int) -> bool:
        mapping = self.get_by_id(mapping_id)
        if not mapping:
            return False
        self.session.delete(mapping)
        logger.info("Sync mapping deleted", mapping_id=mapping_id)
        return True


class PendingActionRepository:
    """Repository for file_sync_cache rows."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, action_id: str) -> Optional[PendingActionModel]:
        return self.session.query(PendingActionModel).filter(PendingActionModel.id == action_id).first()

    def get_by_pair(self, src_url: str, dst_url: str) -> Optional[PendingActionModel]:
        return self.session.query(PendingActionModel).filter(
            PendingActionModel.src_url == src_url,
            PendingActionModel.dst_url == dst_url
        ).first()

    def create_if_absent(self, data: PendingActionCreate) -> Optional[PendingActionModel]:
        """Insert an action unless one exists for the pair or its reverse.

        A pair and its reverse name the same two files, so an update queued
        in one direction blocks the opposite one until it is applied.

        Returns:
            The new row, or None when the pair was already queued
        """
        if self.get_by_pair(data.src_url, data.dst_url) is not None:
            return None
        if self.get_by_pair(data.dst_url, data.src_url) is not None:
            logger.info("Reverse action already queued", src_url=data.src_url, dst_url=data.dst_url)
            return None

        row = PendingActionModel(
            src_url=data.src_url,
            dst_url=data.dst_url,
            action=data.action.value,
            direction=data.direction.value,
            mapping_id=data.mapping_id
        )
        self.session.add(row)
        self.session.flush()
        return row

    def list(
        self,
        status: Optional[ActionStatus] = None,
        mapping_id: Optional[int] = None
    ) -> List[PendingActionModel]:
        query = self.session.query(PendingActionModel)
        if status is not None:
            query = query.filter(PendingActionModel.status == status.value)
        if mapping_id is not None:
            query = query.filter(PendingActionModel.mapping_id == mapping_id)
        return query.order_by(PendingActionModel.created_at, PendingActionModel.id).all()

    def eligible_ids(self, now: datetime, mapping_id: Optional[int] = None) -> List[str]:
        query = self.session.query(PendingActionModel.id).filter(
            PendingActionModel.status == ActionStatus.PENDING.value,
            PendingActionModel.next_attempt_at <= now
        )
        if mapping_id is not None:
            query = query.filter(PendingActionModel.mapping_id == mapping_id)
        return [row.id for row in query.order_by(PendingActionModel.created_at, PendingActionModel.id)]

    def claim(self, action_id: str, now: datetime) -> bool:
        """Conditionally move a due pending action to in_progress."""
        result = self.session.execute(
            update(PendingActionModel)
            .where(
                PendingActionModel.id == action_id,
                PendingActionModel.status == ActionStatus.PENDING.value,
                PendingActionModel.next_attempt_at <= now
            )
            .values(status=ActionStatus.IN_PROGRESS.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def update_fields(self, action_id: str, **fields) -> bool:
        result = self.session.execute(
            update(PendingActionModel)
            .where(PendingActionModel.id == action_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def delete(self, action_id: str) -> bool:
        result = self.session.execute(
            delete(PendingActionModel).where(PendingActionModel.id == action_id)
        )
        return result.rowcount == 1

    def delete_by_url(self, url: str) -> int:
        result = self.session.execute(
            delete(PendingActionModel).where(
                or_(PendingActionModel.src_url == url, PendingActionModel.dst_url == url)
            )
        )
        return result.rowcount


class BlacklistRepository:
    """Repository for file_sync_blacklist rows."""

    def __init__(self, session: Session):
        self.session = session

    def get_all(self) -> List[BlacklistRuleModel]:
        return self.session.query(BlacklistRuleModel).order_by(BlacklistRuleModel.id).all()

    def add(self, rule: BlacklistRule) -> BlacklistRuleModel:
        row = self.session.query(BlacklistRuleModel).filter(
            BlacklistRuleModel.blacklist_url == rule.blacklist_url,
            BlacklistRuleModel.match_type == rule.match_type.value
        ).first()
        if row is None:
            row = BlacklistRuleModel(blacklist_url=rule.blacklist_url, match_type=rule.match_type.value)
            self.session.add(row)
            self.session.flush()
        return row

    def delete(self, blacklist_url: str) -> int:
        result = self.session.execute(
            delete(BlacklistRuleModel).where(BlacklistRuleModel.blacklist_url == blacklist_url)
        )
        return result.rowcount


def get_file_info_repository(session: Session) -> FileInfoRepository:
    return FileInfoRepository(session)


def get_directory_repository(session: Session) -> DirectoryRepository:
    return DirectoryRepository(session)


def get_sync_mapping_repository(session: Session) -> SyncMappingRepository:
    return SyncMappingRepository(session)


def get_pending_action_repository(session: Session) -> PendingActionRepository:
    return PendingActionRepository(session)


def get_blacklist_repository(session: Session) -> BlacklistRepository:
    return BlacklistRepository(session)
