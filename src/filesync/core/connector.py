"""Connector facade wiring the cache stores, planner and executor."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..cache import Blacklist, DirectoryTree, FileInfoCache, MappingStore, SyncQueue
from ..config.settings import AppSettings, get_settings
from ..database import DatabaseManager, get_db_manager
from ..database.models import (
    ActionStatus, BlacklistMatchType, BlacklistRule, FileRecord, PendingSyncAction,
    SyncMapping, SyncMappingCreate
)
from ..endpoints.base import normalize_url
from ..endpoints.factory import EndpointFactory
from ..performance import MetricsCollector, get_metrics_collector
from ..utils.logging import get_logger, log_async_execution_time
from .checksum import ChecksumService
from .executor import ApplyResult, ExecutionReport, SyncExecutor
from .planner import PlanResult, SyncPlanner


class SyncEngineError(Exception):
    """Request the engine cannot serve, e.g. an unknown mapping."""

    def __init__(self, message: str, kind: str = "sync_error", identities: Optional[List[str]] = None):
        super().__init__(message)
        self.kind = kind
        self.identities = identities or []


class FileSyncConnector:
    """Entry point used by the control plane and the command line.

    Owns one instance of every cache store and hands them explicitly to the
    planner and executor.
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        settings: Optional[AppSettings] = None,
        metrics: Optional[MetricsCollector] = None,
        endpoints: Optional[EndpointFactory] = None,
        **endpoint_overrides
    ):
        """Initialize the connector.

        Args:
            db_manager: Database manager; the global one when omitted
            settings: Application settings
            metrics: Metrics collector
            endpoints: Prebuilt endpoint factory
            **endpoint_overrides: Per scheme endpoint kwargs for a new factory
        """
        self.settings = settings or get_settings()
        self.db_manager = db_manager or get_db_manager()
        self.metrics = metrics or get_metrics_collector()
        self.logger = get_logger(self.__class__.__name__)

        self.file_cache = FileInfoCache(self.db_manager)
        self.directory_tree = DirectoryTree(self.db_manager)
        self.mappings = MappingStore(self.db_manager)
        self.blacklist = Blacklist(self.db_manager, self.settings.sync.blacklist_match_type)
        self.queue = SyncQueue(self.db_manager)

        self.endpoints = endpoints or EndpointFactory(
            self.directory_tree, self.settings, self.metrics, **endpoint_overrides
        )
        self.checksum = ChecksumService(self.settings, self.metrics)

        self.planner = SyncPlanner(
            self.file_cache, self.blacklist, self.queue, self.mappings,
            self.endpoints, self.checksum, self.settings, self.metrics
        )
        self.executor = SyncExecutor(
            self.file_cache, self.blacklist, self.queue, self.mappings,
            self.endpoints, self.settings, self.metrics
        )

        self.logger.info("File sync connector initialized")

    # Mappings

    def add_mapping(
        self,
        src_url: str,
        dst_url: str,
        name: Optional[str] = None,
        bidirectional: bool = False
    ) -> SyncMapping:
        """Register a mapping after checking both URLs belong to a backend.

        Raises:
            InvalidUrlError: If either URL has an unsupported scheme
        """
        for url in (src_url, dst_url):
            self.endpoints.for_url(url).check_url(url)

        mapping = self.mappings.add(SyncMappingCreate(
            src_url=src_url, dst_url=dst_url, name=name, bidirectional=bidirectional
        ))
        self.logger.info("Mapping registered", mapping_id=mapping.id, name=mapping.name)
        return mapping

    def list_mappings(self) -> List[SyncMapping]:
        return self.mappings.list_all()

    def get_mapping(self, name: str) -> SyncMapping:
        """Mapping by name, or by id when ``name`` is numeric.

        Raises:
            SyncEngineError: If no such mapping exists
        """
        mapping = self.mappings.get_by_name(name)
        if mapping is None and name.isdigit():
            mapping = self.mappings.get(int(name))
        if mapping is None:
            raise SyncEngineError(f"Mapping '{name}' not found", kind="not_found", identities=[name])
        return mapping

    # Planning

    @log_async_execution_time
    async def sync_all(self, cancel_event: Optional[asyncio.Event] = None) -> List[PlanResult]:
        """Plan every mapping."""
        self.logger.info("Starting full sync")
        return await self.planner.plan_all(cancel_event)

    @log_async_execution_time
    async def sync_mapping(self, name: str, cancel_event: Optional[asyncio.Event] = None) -> PlanResult:
        """Plan one mapping by name."""
        return await self.planner.plan(self.get_mapping(name), cancel_event)

    # Execution

    async def process_action(self, action_id: str) -> ApplyResult:
        """Apply one queued action.

        Raises:
            SyncEngineError: If no action has this id
        """
        if self.queue.get(action_id) is None:
            raise SyncEngineError(f"Action '{action_id}' not found", kind="not_found", identities=[action_id])
        return await self.executor.apply(action_id)

    async def process_all(
        self,
        mapping_name: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> ExecutionReport:
        """Apply every eligible pending action, optionally for one mapping."""
        mapping_id = self.get_mapping(mapping_name).id if mapping_name else None
        return await self.executor.apply_all(mapping_id, cancel_event)

    def requeue_action(self, action_id: str) -> bool:
        return self.executor.requeue(action_id)

    # Queue and cache maintenance

    def remove_pending(self, url: str) -> int:
        """Discard queued actions whose source or destination is ``url``."""
        return self.queue.discard_by_url(normalize_url(url) if "://" in url else url)

    def list_sync_cache(
        self,
        status: Optional[ActionStatus] = None,
        mapping_name: Optional[str] = None
    ) -> List[PendingSyncAction]:
        mapping_id = self.get_mapping(mapping_name).id if mapping_name else None
        return self.queue.list_actions(status, mapping_id)

    def delete_cache_entry(self, record_id: int) -> bool:
        """Drop one file record so its entry is re-examined on the next pass."""
        removed = self.file_cache.remove_by_id(record_id)
        self.logger.info("Cache entry deleted", record_id=record_id, removed=removed)
        return removed

    def list_cache_records(self, limit: Optional[int] = None, offset: int = 0) -> List[FileRecord]:
        return self.file_cache.list_records(limit=limit, offset=offset)

    # Blacklist

    def add_blacklist_rule(self, url: str, match_type: Optional[BlacklistMatchType] = None) -> BlacklistRule:
        return self.blacklist.add(url, match_type)

    def remove_blacklist_rule(self, url: str) -> int:
        return self.blacklist.remove(url)

    def list_blacklist(self) -> List[BlacklistRule]:
        return self.blacklist.list_rules()

    # Lifecycle

    async def health_check(self) -> Dict[str, Any]:
        """Database reachability and queue summary."""
        health = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": self.db_manager.test_connection(),
            "issues": []
        }

        if not health["database"]:
            health["status"] = "unhealthy"
            health["issues"].append("Database connection failed")
            return health

        actions = self.queue.list_actions()
        health["mappings"] = len(self.mappings.list_all())
        health["pending_actions"] = len([a for a in actions if a.status == ActionStatus.PENDING])
        health["failed_actions"] = len([a for a in actions if a.status == ActionStatus.FAILED])
        if health["failed_actions"]:
            health["status"] = "degraded"
            health["issues"].append(f"{health['failed_actions']} actions need attention")
        return health

    async def close(self):
        await self.endpoints.close()
        self.checksum.close()
        self.logger.info("File sync connector closed")
