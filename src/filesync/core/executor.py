"""Sync executor: applies queued actions against the storage endpoints."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..cache import Blacklist, FileInfoCache, MappingStore, SyncQueue
from ..cache.directory_tree import CycleDetectedError, OrphanDirectoryError
from ..config.settings import AppSettings, get_settings
from ..database.models import ActionKind, ActionStatus, PendingSyncAction, SyncDirection
from ..endpoints.base import (
    BaseStorageEndpoint, InvalidUrlError, NotFoundError, PermanentBackendError,
    RateLimitError, StorageError, TransientBackendError, UnresolvableError, normalize_url
)
from ..endpoints.factory import EndpointFactory
from ..performance import ConcurrentExecutor, MetricsCollector, get_metrics_collector
from ..utils.logging import get_logger, log_async_execution_time
from .checksum import HashingReader


PERMANENT_ERRORS = (
    PermanentBackendError,
    InvalidUrlError,
    UnresolvableError,
    CycleDetectedError,
    OrphanDirectoryError,
    StorageError,
)


class ApplyStatus(str, Enum):
    """Outcome of applying one action."""
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    SKIPPED = "skipped"


@dataclass
class ApplyResult:
    """Result of one ``apply`` call."""

    status: ApplyStatus
    action_id: str
    src_url: Optional[str] = None
    dst_url: Optional[str] = None
    action: Optional[ActionKind] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    attempts: int = 0
    exhausted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == ApplyStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "action_id": self.action_id,
            "src_url": self.src_url,
            "dst_url": self.dst_url,
            "action": self.action.value if self.action else None,
            "error_kind": self.error_kind,
            "message": self.message,
            "attempts": self.attempts,
            "exhausted": self.exhausted
        }


@dataclass
class ExecutionReport:
    """Results of a bulk ``apply_all`` pass."""

    results: List[ApplyResult] = field(default_factory=list)
    cancelled: bool = False
    duration: Optional[float] = None

    def count(self, status: ApplyStatus) -> int:
        return len([r for r in self.results if r.status == status])

    @property
    def failures(self) -> List[ApplyResult]:
        return [
            r for r in self.results
            if r.status in (ApplyStatus.TRANSIENT_FAILURE, ApplyStatus.PERMANENT_FAILURE)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": len(self.results),
            "succeeded": self.count(ApplyStatus.SUCCESS),
            "transient_failures": self.count(ApplyStatus.TRANSIENT_FAILURE),
            "permanent_failures": self.count(ApplyStatus.PERMANENT_FAILURE),
            "skipped": self.count(ApplyStatus.SKIPPED),
            "cancelled": self.cancelled,
            "duration": self.duration,
            "results": [r.to_dict() for r in self.results]
        }


class SyncExecutor:
    """Applies pending actions one at a time or in bulk.

    An action is claimed before it runs, so a concurrent bulk pass never
    applies it twice. Success removes the action and refreshes the cache;
    failures leave it queued with the error recorded on the row.
    """

    def __init__(
        self,
        file_cache: FileInfoCache,
        blacklist: Blacklist,
        queue: SyncQueue,
        mappings: MappingStore,
        endpoints: EndpointFactory,
        settings: Optional[AppSettings] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.file_cache = file_cache
        self.blacklist = blacklist
        self.queue = queue
        self.mappings = mappings
        self.endpoints = endpoints
        self.settings = settings or get_settings()
        self.metrics = metrics or get_metrics_collector()
        self.logger = get_logger(self.__class__.__name__)

    async def apply(self, action_id: str) -> ApplyResult:
        """Apply one pending action.

        Args:
            action_id: Id of the queued action

        Returns:
            ApplyResult; failures are reported here, never raised
        """
        action = self.queue.get(action_id)
        if action is None:
            return ApplyResult(ApplyStatus.SKIPPED, action_id, message="Action not found")

        result = ApplyResult(
            ApplyStatus.SKIPPED,
            action_id,
            src_url=action.src_url,
            dst_url=action.dst_url,
            action=action.action,
            attempts=action.attempts
        )

        if not self.queue.claim(action_id):
            result.message = "Action is not eligible or already claimed"
            return result

        matcher = self.blacklist.matcher()
        if matcher.is_blacklisted(action.src_url) or matcher.is_blacklisted(action.dst_url):
            self.queue.discard(action_id)
            result.message = "Blacklisted, action discarded"
            return result

        self.logger.info(
            "Applying action",
            action_id=action_id,
            action=action.action.value,
            direction=action.direction.value,
            src_url=action.src_url,
            dst_url=action.dst_url
        )

        try:
            async with self.metrics.time_operation("executor.apply_duration", tags={"action": action.action.value}):
                if action.action == ActionKind.DELETE:
                    applied = await self._delete(action)
                else:
                    applied = await self._transfer(action)

        except asyncio.CancelledError:
            self.queue.release(action_id)
            raise

        except NotFoundError as e:
            self.queue.discard(action_id)
            result.error_kind = e.kind
            result.message = f"Source vanished, action discarded: {e}"
            self.logger.info("Action source vanished", action_id=action_id, url=e.url)
            return result

        except TransientBackendError as e:
            return self._transient_failure(action, result, e)

        except PERMANENT_ERRORS as e:
            return self._permanent_failure(action, result, e.kind, str(e))

        except Exception as e:
            self.logger.error("Unexpected error applying action", action_id=action_id, error=str(e), exc_info=True)
            return self._permanent_failure(action, result, "internal", f"Unexpected error: {e}")

        if not applied:
            result.message = "Source reappeared, action discarded"
            return result

        self.queue.complete(action_id)
        self.metrics.increment_counter(f"executor.{action.action.value}_applied")
        result.status = ApplyStatus.SUCCESS
        self.logger.info("Action applied", action_id=action_id, action=action.action.value)
        return result

    @log_async_execution_time
    async def apply_all(
        self,
        mapping_id: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> ExecutionReport:
        """Apply every eligible pending action, globally or for one mapping.

        Actions are independent: a failure is recorded on its own row and
        the pass carries on. Cancellation is checked before each action.
        """
        start_time = datetime.now()
        report = ExecutionReport()
        action_ids = self.queue.eligible_ids(mapping_id)

        async def run(action_id: str) -> Optional[ApplyResult]:
            if cancel_event is not None and cancel_event.is_set():
                return None
            return await self.apply(action_id)

        executor = ConcurrentExecutor(max_concurrent=self.settings.sync.max_concurrent_actions)
        outcomes = await executor.execute_batch(
            [lambda a=a: run(a) for a in action_ids],
            return_exceptions=True
        )

        for action_id, outcome in zip(action_ids, outcomes):
            if outcome is None or isinstance(outcome, asyncio.CancelledError):
                report.cancelled = True
            elif isinstance(outcome, BaseException):
                self.logger.error("Action task failed", action_id=action_id, error=str(outcome))
                report.results.append(ApplyResult(
                    ApplyStatus.PERMANENT_FAILURE, action_id, error_kind="internal", message=str(outcome)
                ))
            else:
                report.results.append(outcome)

        report.duration = (datetime.now() - start_time).total_seconds()
        self.logger.info(
            "Bulk apply completed",
            mapping_id=mapping_id,
            total=len(action_ids),
            succeeded=report.count(ApplyStatus.SUCCESS),
            failed=len(report.failures),
            cancelled=report.cancelled,
            duration=f"{report.duration:.2f}s"
        )
        return report

    def requeue(self, action_id: str) -> bool:
        """Reset a failed action so it runs again."""
        return self.queue.requeue(action_id)

    # Operations

    async def _transfer(self, action: PendingSyncAction) -> bool:
        src_ep = self.endpoints.for_url(action.src_url)
        dst_ep = self.endpoints.for_url(action.dst_url)
        src_session, dst_session = self._sessions(action, src_ep, dst_ep)

        source = await src_ep.stat(action.src_url)
        md5sum, sha1sum = source.md5sum, None
        record = self.file_cache.lookup_url(src_ep.servicetype, src_session, source.url)
        if record is not None and not record.is_stale(source.size, source.mtime):
            md5sum = md5sum or record.md5sum
            sha1sum = record.sha1sum

        reader = HashingReader(await src_ep.read(action.src_url))
        try:
            written = await dst_ep.write(action.dst_url, reader, mtime=source.mtime)
        except TransientBackendError:
            # The upload thread may still be reading; the source closes after that read returns
            self.logger.warning("Write abandoned, closing source stream", action_id=action.id, url=action.dst_url)
            raise
        finally:
            reader.close()

        if reader.bytes_read == source.size:
            digests = reader.digests()
            md5sum, sha1sum = digests.md5, digests.sha1
            self.file_cache.upsert(source.to_record(src_ep.servicetype, src_session, md5sum, sha1sum))

        self.file_cache.upsert(written.to_record(dst_ep.servicetype, dst_session, md5sum, sha1sum))
        self.metrics.increment_counter("executor.bytes_transferred", reader.bytes_read)
        return True

    async def _delete(self, action: PendingSyncAction) -> bool:
        src_ep = self.endpoints.for_url(action.src_url)
        dst_ep = self.endpoints.for_url(action.dst_url)
        _, dst_session = self._sessions(action, src_ep, dst_ep)

        # Only delete while the source is still absent
        try:
            await src_ep.stat(action.src_url)
        except NotFoundError:
            pass
        else:
            self.queue.discard(action.id)
            return False

        try:
            await dst_ep.delete(action.dst_url)
        except NotFoundError:
            self.logger.info("Destination already absent", url=action.dst_url)

        self.file_cache.remove_url(dst_ep.servicetype, dst_session, normalize_url(action.dst_url))
        return True

    def _sessions(
        self,
        action: PendingSyncAction,
        src_ep: BaseStorageEndpoint,
        dst_ep: BaseStorageEndpoint
    ) -> Tuple[str, str]:
        """Cache scopes of the action's source and destination."""
        mapping = self.mappings.get(action.mapping_id) if action.mapping_id is not None else None
        if mapping is None:
            return src_ep.servicesession(action.src_url), dst_ep.servicesession(action.dst_url)

        if action.direction == SyncDirection.FORWARD:
            src_root, dst_root = mapping.src_url, mapping.dst_url
        else:
            src_root, dst_root = mapping.dst_url, mapping.src_url
        return src_ep.servicesession(src_root), dst_ep.servicesession(dst_root)

    # Failure bookkeeping

    def _transient_failure(
        self,
        action: PendingSyncAction,
        result: ApplyResult,
        error: TransientBackendError
    ) -> ApplyResult:
        backoff = self.settings.sync.retry_backoff_seconds
        if isinstance(error, RateLimitError) and error.retry_after:
            backoff = max(backoff, float(error.retry_after))

        updated = self.queue.record_transient_failure(
            action.id, error.kind, str(error), backoff, self.settings.sync.max_attempts
        )
        result.error_kind = error.kind
        result.message = str(error)
        if updated is not None:
            result.attempts = updated.attempts
            result.exhausted = updated.status == ActionStatus.FAILED

        result.status = ApplyStatus.PERMANENT_FAILURE if result.exhausted else ApplyStatus.TRANSIENT_FAILURE
        self.metrics.increment_counter("executor.transient_failures")
        self.logger.warning(
            "Action failed transiently",
            action_id=action.id,
            kind=error.kind,
            attempts=result.attempts,
            exhausted=result.exhausted,
            error=str(error)
        )
        return result

    def _permanent_failure(self, action: PendingSyncAction, result: ApplyResult, kind: str, message: str) -> ApplyResult:
        updated = self.queue.record_permanent_failure(action.id, kind, message)
        result.status = ApplyStatus.PERMANENT_FAILURE
        result.error_kind = kind
        result.message = message
        if updated is not None:
            result.attempts = updated.attempts

        self.metrics.increment_counter("executor.permanent_failures")
        self.logger.error("Action failed permanently", action_id=action.id, kind=kind, error=message)
        return result
