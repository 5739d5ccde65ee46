"""Content digests computed on a bounded worker pool."""

import asyncio
import hashlib
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import BinaryIO, Dict, Iterable, Optional, Union

import psutil

from ..config.settings import AppSettings, get_settings
from ..endpoints.base import BaseStorageEndpoint, StorageError
from ..performance import ConcurrentExecutor, MetricsCollector, get_metrics_collector
from ..utils.logging import get_logger


logger = get_logger("core.checksum")


@dataclass(frozen=True)
class Digests:
    """md5 and sha1 hex digests of one entry."""

    md5: str
    sha1: str


class ChecksumReadError(Exception):
    """Content could not be streamed to completion."""

    kind = "checksum_read"

    def __init__(self, message: str, url: Optional[str] = None, cause_kind: Optional[str] = None):
        super().__init__(message)
        self.url = url
        self.cause_kind = cause_kind


class SourceClosedError(ValueError):
    """A copy read from a source that was already closed."""


class HashingReader:
    """Read-only, forward-only wrapper digesting whatever passes through it.

    The digests describe the whole content only if the consumer read to the
    end; compare ``bytes_read`` with the expected size before trusting them.

    Reads happen on an upload thread while ``close`` comes from the event
    loop. When a write times out the thread can still be inside ``read``;
    ``close`` then only marks the reader and the thread closes the source
    once that read returns. Any later read raises ``SourceClosedError``.
    """

    def __init__(self, stream: BinaryIO):
        self._stream = stream
        self._md5 = hashlib.md5()
        self._sha1 = hashlib.sha1()
        self._lock = threading.Lock()
        self._reading = False
        self.closed = False
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        with self._lock:
            if self.closed:
                raise SourceClosedError("Source stream closed before the write finished")
            self._reading = True
        try:
            chunk = self._stream.read(size)
        finally:
            with self._lock:
                self._reading = False
                abandoned = self.closed
            if abandoned:
                self._stream.close()
        if abandoned:
            raise SourceClosedError("Source stream closed before the write finished")

        if chunk:
            self._md5.update(chunk)
            self._sha1.update(chunk)
            self.bytes_read += len(chunk)
        return chunk

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def close(self):
        """Close the source now, or after the read in flight returns."""
        with self._lock:
            if self.closed:
                return
            self.closed = True
            if self._reading:
                return
        self._stream.close()

    def digests(self) -> Digests:
        return Digests(md5=self._md5.hexdigest(), sha1=self._sha1.hexdigest())


class ChecksumService:
    """Hashes entries with a fixed size thread pool.

    Nothing is memoized between calls; a batch hashes each distinct URL once.
    """

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        metrics: Optional[MetricsCollector] = None,
        max_workers: Optional[int] = None
    ):
        self.settings = settings or get_settings()
        self.metrics = metrics or get_metrics_collector()
        self.chunk_size = self.settings.sync.checksum_chunk_size
        self.max_workers = (
            max_workers
            or self.settings.sync.checksum_workers
            or psutil.cpu_count(logical=True)
            or 1
        )
        self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="checksum")

    def digest_stream(self, stream: BinaryIO) -> Digests:
        """Blocking: digest a stream to its end and close it."""
        md5 = hashlib.md5()
        sha1 = hashlib.sha1()
        size = 0
        try:
            with self.metrics.time_block("checksum.read_duration"):
                while True:
                    chunk = stream.read(self.chunk_size)
                    if not chunk:
                        break
                    md5.update(chunk)
                    sha1.update(chunk)
                    size += len(chunk)
        finally:
            stream.close()

        self.metrics.increment_counter("checksum.bytes_hashed", size)
        return Digests(md5=md5.hexdigest(), sha1=sha1.hexdigest())

    async def hash_entry(self, endpoint: BaseStorageEndpoint, url: str) -> Digests:
        """Digest the content at ``url``.

        Raises:
            ChecksumReadError: If the content cannot be opened or read fully
        """
        loop = asyncio.get_running_loop()
        try:
            stream = await endpoint.read(url)
        except StorageError as e:
            raise ChecksumReadError(f"Cannot open {url}: {e}", url=url, cause_kind=e.kind) from e

        try:
            async with self.metrics.time_operation("checksum.duration", tags={"backend": endpoint.servicetype.value}):
                digests = await loop.run_in_executor(self._pool, self.digest_stream, stream)
        except OSError as e:
            raise ChecksumReadError(f"Read of {url} failed: {e}", url=url, cause_kind="io") from e
        except Exception as e:
            mapped = endpoint.classify_error(e, url)
            if mapped is None:
                raise
            raise ChecksumReadError(f"Read of {url} failed: {mapped}", url=url, cause_kind=mapped.kind) from e

        self.metrics.increment_counter("checksum.files_hashed")
        return digests

    async def hash_many(
        self,
        endpoint: BaseStorageEndpoint,
        urls: Iterable[str]
    ) -> Dict[str, Union[Digests, ChecksumReadError]]:
        """Hash every distinct URL once; failures are returned, not raised."""
        distinct = list(dict.fromkeys(urls))
        if not distinct:
            return {}

        async def hash_one(url: str):
            try:
                return url, await self.hash_entry(endpoint, url)
            except ChecksumReadError as e:
                logger.warning("Checksum failed", url=url, error=str(e))
                return url, e

        executor = ConcurrentExecutor(max_concurrent=self.max_workers)
        pairs = await executor.execute_batch([lambda u=url: hash_one(u) for url in distinct])

        logger.debug("Checksum batch completed", backend=endpoint.servicetype.value, count=len(distinct))
        return dict(pairs)

    def close(self):
        self._pool.shutdown(wait=True)
