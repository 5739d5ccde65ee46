"""Sync engine: checksum service, planner, executor and the connector facade."""

from .checksum import ChecksumService, ChecksumReadError, Digests, HashingReader, SourceClosedError
from .planner import SyncPlanner, PlanResult, compare_content
from .executor import SyncExecutor, ApplyResult, ApplyStatus, ExecutionReport
from .connector import FileSyncConnector, SyncEngineError

__all__ = [
    "ChecksumService",
    "ChecksumReadError",
    "Digests",
    "HashingReader",
    "SourceClosedError",
    "SyncPlanner",
    "PlanResult",
    "compare_content",
    "SyncExecutor",
    "ApplyResult",
    "ApplyStatus",
    "ExecutionReport",
    "FileSyncConnector",
    "SyncEngineError"
]
