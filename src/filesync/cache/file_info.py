"""Checksum-indexed cache of observed file metadata."""

from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError

from ..database.database import DatabaseManager
from ..database.models import FileKey, FileRecord, ServiceType
from ..database.operations import get_file_info_repository
from ..utils.logging import get_logger


logger = get_logger("cache.file_info")


class FileInfoCache:
    """Answers "has this entry changed since we last looked" without reading it.

    Records are keyed by their identity tuple; soft-deleted records are
    treated as missing by every read.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def lookup(self, key: FileKey) -> Optional[FileRecord]:
        with self.db_manager.session_scope() as session:
            row = get_file_info_repository(session).get_by_identity(key)
            if row is None or row.deleted_at is not None:
                return None
            return FileRecord.model_validate(row)

    def lookup_url(self, servicetype: ServiceType, servicesession: str, urlname: str) -> Optional[FileRecord]:
        with self.db_manager.session_scope() as session:
            row = get_file_info_repository(session).get_live_by_url(servicetype.value, servicesession, urlname)
            return FileRecord.model_validate(row) if row is not None else None

    def needs_rehash(self, key: FileKey, size: int, mtime: int) -> bool:
        """True unless a live record with exactly this size and mtime exists."""
        record = self.lookup(key)
        return record is None or record.is_stale(size, mtime)

    def upsert(self, record: FileRecord) -> FileRecord:
        """Insert or replace by identity; idempotent."""
        try:
            return self._upsert(record)
        except IntegrityError:
            # Lost an insert race on the same identity; the retry updates it
            logger.debug("Concurrent insert of file record, retrying", urlname=record.urlname)
            return self._upsert(record)

    def _upsert(self, record: FileRecord) -> FileRecord:
        with self.db_manager.session_scope() as session:
            row = get_file_info_repository(session).upsert(record)
            return FileRecord.model_validate(row)

    def remove(self, key: FileKey) -> bool:
        with self.db_manager.session_scope() as session:
            return get_file_info_repository(session).delete_by_identity(key)

    def remove_url(self, servicetype: ServiceType, servicesession: str, urlname: str) -> int:
        """Soft delete the live record of a URL."""
        with self.db_manager.session_scope() as session:
            return get_file_info_repository(session).soft_delete_url(servicetype.value, servicesession, urlname)

    def remove_by_id(self, record_id: int) -> bool:
        with self.db_manager.session_scope() as session:
            return get_file_info_repository(session).delete_by_id(record_id)

    def load_scope(
        self,
        servicetype: ServiceType,
        servicesession: str,
        url_prefix: Optional[str] = None
    ) -> Dict[str, FileRecord]:
        """Live records of a scope keyed by urlname."""
        with self.db_manager.session_scope() as session:
            rows = get_file_info_repository(session).list_scope(servicetype.value, servicesession, url_prefix)
            return {row.urlname: FileRecord.model_validate(row) for row in rows}

    def mark_missing(
        self,
        servicetype: ServiceType,
        servicesession: str,
        url_prefix: str,
        seen_urls: Iterable[str]
    ) -> int:
        """Soft delete live records under ``url_prefix`` that were not listed."""
        with self.db_manager.session_scope() as session:
            count = get_file_info_repository(session).soft_delete_missing(
                servicetype.value, servicesession, url_prefix, seen_urls
            )

        if count:
            logger.info(
                "Cache records marked missing",
                servicetype=servicetype.value,
                servicesession=servicesession,
                count=count
            )
        return count

    def list_records(
        self,
        servicetype: Optional[ServiceType] = None,
        include_deleted: bool = False,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[FileRecord]:
        with self.db_manager.session_scope() as session:
            rows = get_file_info_repository(session).list_records(
                servicetype.value if servicetype else None, include_deleted, limit, offset
            )
            return [FileRecord.model_validate(row) for row in rows]
