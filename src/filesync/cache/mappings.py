"""Registry of configured sync mappings."""

from datetime import datetime
from typing import List, Optional

from ..database.database import DatabaseManager
from ..database.models import SyncMapping, SyncMappingCreate
from ..database.operations import get_sync_mapping_repository
from ..endpoints.base import normalize_url
from ..utils.logging import get_logger


logger = get_logger("cache.mappings")


class MappingStore:
    """CRUD over file_sync_config."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def add(self, data: SyncMappingCreate) -> SyncMapping:
        """Register a mapping; re-adding the same URL pair updates it in place."""
        data = data.model_copy(update={
            "src_url": normalize_url(data.src_url),
            "dst_url": normalize_url(data.dst_url)
        })

        with self.db_manager.session_scope() as session:
            repo = get_sync_mapping_repository(session)
            mapping = repo.get_by_urls(data.src_url, data.dst_url)
            if mapping is None:
                mapping = repo.create(data)
            else:
                if data.name is not None:
                    mapping.name = data.name
                mapping.bidirectional = data.bidirectional
                session.flush()
                logger.info("Sync mapping updated", mapping_id=mapping.id)
            return SyncMapping.model_validate(mapping)

    def get(self, mapping_id: int) -> Optional[SyncMapping]:
        with self.db_manager.session_scope() as session:
            mapping = get_sync_mapping_repository(session).get_by_id(mapping_id)
            return SyncMapping.model_validate(mapping) if mapping else None

    def get_by_name(self, name: str) -> Optional[SyncMapping]:
        with self.db_manager.session_scope() as session:
            mapping = get_sync_mapping_repository(session).get_by_name(name)
            return SyncMapping.model_validate(mapping) if mapping else None

    def list_all(self) -> List[SyncMapping]:
        with self.db_manager.session_scope() as session:
            return [SyncMapping.model_validate(m) for m in get_sync_mapping_repository(session).get_all()]

    def mark_run(self, mapping_id: int, when: datetime) -> bool:
        with self.db_manager.session_scope() as session:
            return get_sync_mapping_repository(session).update_last_run(mapping_id, when)

    def remove(self, mapping_id: int) -> bool:
        with self.db_manager.session_scope() as session:
            return get_sync_mapping_repository(session).delete(mapping_id)
