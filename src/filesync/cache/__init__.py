"""Cache stores; the only code that mutates the cache tables."""

from .file_info import FileInfoCache
from .directory_tree import DirectoryTree, DirectoryMap, CycleDetectedError, OrphanDirectoryError
from .mappings import MappingStore
from .blacklist import Blacklist, BlacklistMatcher
from .sync_queue import SyncQueue

__all__ = [
    "FileInfoCache",
    "DirectoryTree",
    "DirectoryMap",
    "CycleDetectedError",
    "OrphanDirectoryError",
    "MappingStore",
    "Blacklist",
    "BlacklistMatcher",
    "SyncQueue"
]
