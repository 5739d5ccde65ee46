"""Sync planner: diffs the two sides of a mapping into pending actions."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from ..cache import Blacklist, BlacklistMatcher, FileInfoCache, MappingStore, SyncQueue
from ..cache.directory_tree import CycleDetectedError, OrphanDirectoryError
from ..config.settings import AppSettings, get_settings
from ..database.models import (
    ActionKind, ItemError, PendingActionCreate, PendingSyncAction, ServiceType,
    SyncDirection, SyncMapping, utcnow
)
from ..endpoints.base import (
    BaseStorageEndpoint, EntryInfo, InvalidUrlError, NotFoundError, StorageError, UnresolvableError,
    normalize_url
)
from ..endpoints.factory import EndpointFactory
from ..performance import ConcurrentExecutor, MetricsCollector, get_metrics_collector
from ..utils.logging import get_logger, log_async_execution_time
from .checksum import ChecksumReadError, ChecksumService


def compare_content(a: EntryInfo, b: EntryInfo) -> Optional[bool]:
    """Whether two entries hold the same bytes, None when undecidable.

    Known digests decide; otherwise a size mismatch means different and
    equal size plus equal mtime means same.
    """
    if a.md5sum and b.md5sum:
        if a.md5sum != b.md5sum:
            return False
        if a.sha1sum and b.sha1sum:
            return a.sha1sum == b.sha1sum
        return True
    if a.sha1sum and b.sha1sum:
        return a.sha1sum == b.sha1sum
    if a.size != b.size:
        return False
    if a.mtime == b.mtime:
        return True
    return None


def error_kind(exc: Exception) -> str:
    return getattr(exc, "kind", type(exc).__name__)


@dataclass
class SideIndex:
    """Listing of one side of a mapping keyed by relative path."""

    endpoint: BaseStorageEndpoint
    root_url: str
    servicesession: str
    entries: Dict[str, EntryInfo] = field(default_factory=dict)
    failed: Set[str] = field(default_factory=set)
    complete: bool = False

    @property
    def servicetype(self) -> ServiceType:
        return self.endpoint.servicetype


@dataclass
class PlanResult:
    """Outcome of planning one mapping."""

    mapping_id: int
    mapping_name: Optional[str] = None
    src_listed: int = 0
    dst_listed: int = 0
    blacklisted: int = 0
    hashed: int = 0
    cache_updates: int = 0
    enqueued: List[PendingSyncAction] = field(default_factory=list)
    duplicates: int = 0
    errors: List[ItemError] = field(default_factory=list)
    completed: bool = False
    cancelled: bool = False
    fatal_error: Optional[str] = None
    duration: Optional[float] = None

    @property
    def success(self) -> bool:
        return self.completed and self.fatal_error is None

    def add_error(self, identity: str, exc: Exception) -> ItemError:
        item = ItemError(identity=identity, kind=error_kind(exc), message=str(exc))
        self.errors.append(item)
        return item

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mapping_id": self.mapping_id,
            "mapping_name": self.mapping_name,
            "src_listed": self.src_listed,
            "dst_listed": self.dst_listed,
            "blacklisted": self.blacklisted,
            "hashed": self.hashed,
            "cache_updates": self.cache_updates,
            "enqueued": len(self.enqueued),
            "action_ids": [action.id for action in self.enqueued],
            "duplicates": self.duplicates,
            "errors": [e.model_dump(mode="json") for e in self.errors],
            "completed": self.completed,
            "cancelled": self.cancelled,
            "fatal_error": self.fatal_error,
            "duration": self.duration
        }


class SyncPlanner:
    """Lists both sides of a mapping, diffs them and queues the differences.

    Unchanged entries are recognised from the file cache without reading
    their content; digests are only computed when size and mtime cannot
    decide whether two entries differ.
    """

    def __init__(
        self,
        file_cache: FileInfoCache,
        blacklist: Blacklist,
        queue: SyncQueue,
        mappings: MappingStore,
        endpoints: EndpointFactory,
        checksum: ChecksumService,
        settings: Optional[AppSettings] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.file_cache = file_cache
        self.blacklist = blacklist
        self.queue = queue
        self.mappings = mappings
        self.endpoints = endpoints
        self.checksum = checksum
        self.settings = settings or get_settings()
        self.metrics = metrics or get_metrics_collector()
        self.logger = get_logger(self.__class__.__name__)

    @log_async_execution_time
    async def plan(self, mapping: SyncMapping, cancel_event: Optional[asyncio.Event] = None) -> PlanResult:
        """Plan one mapping.

        Args:
            mapping: Mapping to reconcile
            cancel_event: Checked at every listed entry and queued action

        Returns:
            PlanResult; ``last_run`` is only advanced when it is ``success``
        """
        start_time = datetime.now()
        result = PlanResult(mapping_id=mapping.id, mapping_name=mapping.name)
        matcher = self.blacklist.matcher()

        self.logger.info(
            "Starting plan for mapping",
            mapping_id=mapping.id,
            src_url=mapping.src_url,
            dst_url=mapping.dst_url,
            bidirectional=mapping.bidirectional
        )

        try:
            src = await self._index(mapping.src_url, matcher, result, cancel_event)
            result.src_listed = len(src.entries)
            dst = None
            if src.complete:
                dst = await self._index(mapping.dst_url, matcher, result, cancel_event, missing_ok=True)
                result.dst_listed = len(dst.entries)

            if dst is None or not dst.complete:
                result.cancelled = True
            else:
                actions = await self._diff(mapping, src, dst, result)
                await self._enqueue(actions, result, cancel_event)

        except (StorageError, CycleDetectedError, OrphanDirectoryError) as e:
            result.fatal_error = str(e)
            result.add_error(getattr(e, "url", None) or mapping.src_url, e)
            self.logger.error("Plan aborted by endpoint error", mapping_id=mapping.id, error=str(e))

        result.completed = not result.cancelled and result.fatal_error is None
        if result.completed:
            self.mappings.mark_run(mapping.id, utcnow())

        result.duration = (datetime.now() - start_time).total_seconds()
        self.metrics.increment_counter("planner.actions_enqueued", len(result.enqueued))
        self.metrics.increment_counter("planner.item_errors", len(result.errors))

        self.logger.info(
            "Plan completed for mapping",
            mapping_id=mapping.id,
            completed=result.completed,
            cancelled=result.cancelled,
            enqueued=len(result.enqueued),
            duplicates=result.duplicates,
            errors=len(result.errors),
            duration=f"{result.duration:.2f}s"
        )
        return result

    async def plan_all(self, cancel_event: Optional[asyncio.Event] = None) -> List[PlanResult]:
        """Plan every registered mapping; one mapping's failure never stops another."""
        mappings = self.mappings.list_all()
        if not mappings:
            self.logger.warning("No mappings found to plan")
            return []

        executor = ConcurrentExecutor(max_concurrent=self.settings.sync.max_concurrent_syncs)
        outcomes = await executor.execute_batch(
            [lambda m=m: self.plan(m, cancel_event) for m in mappings],
            return_exceptions=True
        )

        results = []
        for mapping, outcome in zip(mappings, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.error(
                    "Plan failed with unexpected error",
                    mapping_id=mapping.id,
                    error=str(outcome),
                    exc_info=outcome
                )
                outcome = PlanResult(
                    mapping_id=mapping.id,
                    mapping_name=mapping.name,
                    fatal_error=f"Unexpected error during plan: {outcome}"
                )
            results.append(outcome)
        return results

    # Indexing

    async def _index(
        self,
        root_url: str,
        matcher: BlacklistMatcher,
        result: PlanResult,
        cancel_event: Optional[asyncio.Event],
        missing_ok: bool = False
    ) -> SideIndex:
        """List one side, refreshing its cache scope along the way.

        With ``missing_ok`` a root that does not exist yet lists as empty;
        writing the first action creates it.
        """
        endpoint = self.endpoints.for_url(root_url)
        root = normalize_url(root_url)
        side = SideIndex(endpoint=endpoint, root_url=root, servicesession=endpoint.servicesession(root))
        prefix = root if root.endswith("/") else root + "/"

        cached = self.file_cache.load_scope(side.servicetype, side.servicesession, prefix)
        seen_urls: Set[str] = set()

        def on_error(url: str, exc: Exception):
            seen_urls.add(url)
            result.add_error(url, exc)
            try:
                side.failed.add(endpoint.relative_path(root, url))
            except InvalidUrlError:
                pass

        listed_any = False
        try:
            async for entry in endpoint.list(root, on_error):
                listed_any = True
                if cancel_event is not None and cancel_event.is_set():
                    self.logger.info("Listing cancelled", root=root)
                    return side
                if entry.is_directory:
                    continue

                seen_urls.add(entry.url)
                if matcher.is_blacklisted(entry.url):
                    result.blacklisted += 1
                    continue

                record = cached.get(entry.url)
                if entry.backend_mtime is not None:
                    try:
                        await self._preserve_mtime(endpoint, entry, record)
                    except StorageError as e:
                        on_error(entry.url, e)
                        continue

                changed = record is None or record.is_stale(entry.size, entry.mtime) or (
                    entry.md5sum is not None and record.md5sum is not None and entry.md5sum != record.md5sum
                )
                if changed:
                    self.file_cache.upsert(entry.to_record(side.servicetype, side.servicesession))
                    result.cache_updates += 1
                else:
                    if entry.md5sum is None:
                        entry.md5sum = record.md5sum
                    if entry.sha1sum is None:
                        entry.sha1sum = record.sha1sum

                side.entries[entry.relative_path] = entry
        except (NotFoundError, UnresolvableError) as e:
            if not missing_ok or listed_any:
                raise
            self.logger.info("Root does not exist yet, listing it as empty", root=root, error=str(e))

        side.complete = True
        self.file_cache.mark_missing(side.servicetype, side.servicesession, prefix, seen_urls)
        return side

    async def _preserve_mtime(self, endpoint: BaseStorageEndpoint, entry: EntryInfo, record):
        """Swap a backend assigned timestamp for the preserved source mtime.

        The cached mtime is reused while the backend timestamp and size are
        unchanged; anything new or rewritten is stat'ed once.
        """
        if (
            record is not None
            and record.deleted_at is None
            and record.filestat_backend_mtime == entry.backend_mtime
            and record.filestat_st_size == entry.size
        ):
            entry.mtime = record.filestat_st_mtime
            return

        current = await endpoint.stat(entry.url)
        entry.mtime = current.mtime
        entry.backend_mtime = current.backend_mtime

    # Diffing

    async def _diff(
        self,
        mapping: SyncMapping,
        src: SideIndex,
        dst: SideIndex,
        result: PlanResult
    ) -> List[PendingActionCreate]:
        actions = []
        excluded = src.failed | dst.failed
        paths = sorted(rel for rel in set(src.entries) | set(dst.entries) if rel not in excluded)

        verdicts = {}
        for rel in paths:
            if rel in src.entries and rel in dst.entries:
                verdicts[rel] = compare_content(src.entries[rel], dst.entries[rel])

        undecided = [rel for rel, verdict in verdicts.items() if verdict is None]
        if undecided:
            unreadable = await self._rehash(src, undecided, result) | await self._rehash(dst, undecided, result)
            for rel in undecided:
                if rel in unreadable:
                    continue
                verdict = compare_content(src.entries[rel], dst.entries[rel])
                verdicts[rel] = False if verdict is None else verdict

        for rel in paths:
            s = src.entries.get(rel)
            d = dst.entries.get(rel)

            if d is None:
                actions.append(self._action(
                    mapping, ActionKind.CREATE, SyncDirection.FORWARD,
                    s.url, dst.endpoint.join_url(dst.root_url, rel)
                ))
            elif s is None:
                if mapping.bidirectional:
                    actions.append(self._action(
                        mapping, ActionKind.CREATE, SyncDirection.REVERSE,
                        d.url, src.endpoint.join_url(src.root_url, rel)
                    ))
                else:
                    actions.append(self._action(
                        mapping, ActionKind.DELETE, SyncDirection.FORWARD,
                        src.endpoint.join_url(src.root_url, rel), d.url
                    ))
            else:
                same = verdicts[rel]
                if same is None or same:
                    continue
                if s.mtime > d.mtime:
                    actions.append(self._action(mapping, ActionKind.UPDATE, SyncDirection.FORWARD, s.url, d.url))
                elif d.mtime > s.mtime:
                    actions.append(self._action(mapping, ActionKind.UPDATE, SyncDirection.REVERSE, d.url, s.url))
                else:
                    self.logger.info("Content differs with equal mtime, left unchanged", path=rel)

        return actions

    async def _rehash(self, side: SideIndex, paths: List[str], result: PlanResult) -> Set[str]:
        """Digest the entries of ``paths`` that have no md5 yet.

        Returns:
            Relative paths whose content could not be read
        """
        pending = {side.entries[rel].url: rel for rel in paths if side.entries[rel].md5sum is None}
        if not pending:
            return set()

        unreadable = set()
        outcomes = await self.checksum.hash_many(side.endpoint, list(pending))
        for url, outcome in outcomes.items():
            rel = pending[url]
            if isinstance(outcome, ChecksumReadError):
                result.add_error(url, outcome)
                unreadable.add(rel)
                continue

            entry = side.entries[rel]
            entry.md5sum = outcome.md5
            entry.sha1sum = outcome.sha1
            self.file_cache.upsert(entry.to_record(side.servicetype, side.servicesession))
            result.hashed += 1
            result.cache_updates += 1
        return unreadable

    def _action(
        self,
        mapping: SyncMapping,
        action: ActionKind,
        direction: SyncDirection,
        src_url: str,
        dst_url: str
    ) -> PendingActionCreate:
        return PendingActionCreate(
            src_url=src_url,
            dst_url=dst_url,
            action=action,
            direction=direction,
            mapping_id=mapping.id
        )

    async def _enqueue(
        self,
        actions: List[PendingActionCreate],
        result: PlanResult,
        cancel_event: Optional[asyncio.Event]
    ):
        for data in actions:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                self.logger.info("Enqueue cancelled", remaining=len(actions) - len(result.enqueued) - result.duplicates)
                return
            action = self.queue.enqueue(data)
            if action is None:
                result.duplicates += 1
            else:
                result.enqueued.append(action)
