"""Storage endpoint interface, entry metadata and the backend error taxonomy."""

import asyncio
import functools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncGenerator, BinaryIO, Callable, Dict, Optional
from urllib.parse import quote, unquote, urlparse

from ..config.settings import AppSettings, get_settings
from ..database.models import FileRecord, ServiceType
from ..performance import MetricsCollector, get_metrics_collector
from ..utils.logging import get_logger


ErrorCallback = Callable[[str, Exception], None]


@dataclass
class EntryInfo:
    """One listed or stat'ed backend entry.

    ``backend_mtime`` is the timestamp the backend itself assigned when it
    cannot preserve the source mtime (S3 LastModified); ``mtime`` then holds
    the preserved value once it is known.
    """

    url: str
    filename: str
    filepath: str
    serviceid: str = ""
    relative_path: str = ""
    size: int = 0
    mtime: int = 0
    is_directory: bool = False
    md5sum: Optional[str] = None
    sha1sum: Optional[str] = None
    backend_mtime: Optional[int] = None

    def to_record(
        self,
        servicetype: ServiceType,
        servicesession: str,
        md5sum: Optional[str] = None,
        sha1sum: Optional[str] = None
    ) -> FileRecord:
        """Build the cache record for this entry within a scope."""
        return FileRecord(
            filename=self.filename,
            filepath=self.filepath,
            urlname=self.url,
            serviceid=self.serviceid or servicesession,
            servicetype=servicetype,
            servicesession=servicesession,
            md5sum=md5sum if md5sum is not None else self.md5sum,
            sha1sum=sha1sum if sha1sum is not None else self.sha1sum,
            filestat_st_mtime=self.mtime,
            filestat_st_size=self.size,
            filestat_backend_mtime=self.backend_mtime
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "relative_path": self.relative_path,
            "filename": self.filename,
            "filepath": self.filepath,
            "serviceid": self.serviceid,
            "size": self.size,
            "mtime": self.mtime,
            "is_directory": self.is_directory,
            "md5sum": self.md5sum,
            "sha1sum": self.sha1sum,
            "backend_mtime": self.backend_mtime
        }


def normalize_url(url: str) -> str:
    """Percent-quote the path of a URL exactly once and drop a trailing slash."""
    parsed = urlparse(url)
    path = quote(unquote(parsed.path), safe="/")
    if len(path) > 1:
        path = path.rstrip("/")
    return f"{parsed.scheme}://{parsed.netloc}{path}"


class BaseStorageEndpoint(ABC):
    """Abstract base class for all storage backends.

    URLs handed to and returned from an endpoint are normalized
    (see :func:`normalize_url`). Every method that reaches the backend is a
    coroutine; blocking SDK calls go through :meth:`_call`, which applies the
    per-call timeout and maps SDK exceptions onto the StorageError taxonomy.
    """

    scheme: str = ""
    servicetype: ServiceType

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        metrics: Optional[MetricsCollector] = None,
        **kwargs
    ):
        self.settings = settings or get_settings()
        self.metrics = metrics or get_metrics_collector()
        self.timeout = self.settings.sync.backend_timeout_seconds
        self.logger = get_logger(self.__class__.__name__)

    # URL handling

    def check_url(self, url: str):
        """Parse a URL owned by this endpoint.

        Raises:
            InvalidUrlError: On a scheme mismatch or a URL without a path
        """
        parsed = urlparse(url)
        if parsed.scheme != self.scheme:
            raise InvalidUrlError(
                f"URL scheme '{parsed.scheme}' does not match {self.scheme} endpoint", url=url
            )
        return parsed

    def join_url(self, root_url: str, relative_path: str) -> str:
        """URL of ``relative_path`` (POSIX, unquoted) under ``root_url``."""
        root = normalize_url(root_url)
        if not relative_path:
            return root
        if not root.endswith("/"):
            root += "/"
        return root + quote(relative_path.strip("/"), safe="/")

    def relative_path(self, root_url: str, url: str) -> str:
        """Inverse of :meth:`join_url`."""
        root = normalize_url(root_url)
        if not root.endswith("/"):
            root += "/"
        url = normalize_url(url)
        if not url.startswith(root):
            raise InvalidUrlError(f"{url} is not under {root_url}", url=url)
        return unquote(url[len(root):])

    @abstractmethod
    def servicesession(self, root_url: str) -> str:
        """Cache scope of URLs under ``root_url``."""

    @abstractmethod
    async def resolve(self, url: str) -> str:
        """Backend-native identity of ``url``.

        Raises:
            InvalidUrlError: If the URL does not belong to this backend
            UnresolvableError: If a hierarchical path segment is unknown
        """

    # Operations

    @abstractmethod
    def list(self, root_url: str, on_error: Optional[ErrorCallback] = None) -> AsyncGenerator[EntryInfo, None]:
        """List every file under ``root_url``.

        Per entry failures are reported through ``on_error(url, exc)`` and the
        entry is skipped; failures of the root itself are raised.

        Yields:
            EntryInfo with ``relative_path`` set relative to ``root_url``
        """

    @abstractmethod
    async def stat(self, url: str) -> EntryInfo:
        """Metadata of one entry; raises NotFoundError when absent."""

    @abstractmethod
    def open_stream(self, url: str) -> BinaryIO:
        """Blocking: open ``url`` for binary reading. Caller closes."""

    async def read(self, url: str) -> BinaryIO:
        """Open ``url`` for binary reading without blocking the loop."""
        return await self._call("read", self.open_stream, url, url=url)

    @abstractmethod
    async def write(self, url: str, stream: BinaryIO, mtime: Optional[int] = None) -> EntryInfo:
        """Write ``stream`` to ``url`` and return the written entry."""

    @abstractmethod
    async def delete(self, url: str):
        """Delete the entry at ``url``."""

    async def close(self):
        """Release backend resources."""

    # Plumbing

    def classify_error(self, exc: Exception, url: Optional[str] = None) -> Optional["StorageError"]:
        """Map a backend exception onto the taxonomy; None leaves it as is."""
        return None

    async def _call(self, operation: str, func: Callable, *args, url: Optional[str] = None, **kwargs):
        """Run a blocking backend call on the default executor with a timeout."""
        loop = asyncio.get_running_loop()
        tags = {"backend": self.servicetype.value, "operation": operation}

        async with self.metrics.time_operation("endpoint.call_duration", tags=tags):
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(func, *args, **kwargs)),
                    timeout=self.timeout
                )
            except asyncio.TimeoutError as e:
                self.metrics.increment_counter(f"endpoint.{self.servicetype.value}.timeouts")
                raise TransientBackendError(
                    f"{operation} timed out after {self.timeout}s", url=url
                ) from e
            except StorageError:
                raise
            except Exception as e:
                mapped = self.classify_error(e, url)
                if mapped is None:
                    raise
                self.metrics.increment_counter(f"endpoint.{self.servicetype.value}.{mapped.kind}")
                raise mapped from e


class StorageError(Exception):
    """Base class of backend failures."""

    kind = "storage_error"

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class NotFoundError(StorageError):
    """The addressed entry does not exist."""

    kind = "not_found"


class InvalidUrlError(StorageError):
    """URL scheme does not match the backend, or the URL is malformed."""

    kind = "invalid_url"


class UnresolvableError(StorageError):
    """A hierarchical path segment has no known directory."""

    kind = "unresolvable"


class TransientBackendError(StorageError):
    """Retryable failure: throttling, 5xx, timeouts, dropped connections."""

    kind = "transient"


class RateLimitError(TransientBackendError):
    """Raised when a backend rate limit is exceeded."""

    kind = "rate_limited"

    def __init__(self, message: str, retry_after: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message, url=url)
        self.retry_after = retry_after


class PermanentBackendError(StorageError):
    """Non-retryable failure: authorization, quota, invalid request."""

    kind = "permanent"


class AuthenticationError(PermanentBackendError):
    """Raised when backend authentication fails."""

    kind = "authentication"
