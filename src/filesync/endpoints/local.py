"""Local filesystem endpoint (``file://`` URLs)."""

import errno
import os
import shutil
import tempfile
from pathlib import Path
from typing import AsyncGenerator, BinaryIO, List, Optional, Tuple
from urllib.parse import quote, unquote

from .base import (
    BaseStorageEndpoint, EntryInfo, ErrorCallback, normalize_url,
    StorageError, NotFoundError, InvalidUrlError, TransientBackendError, PermanentBackendError
)
from ..database.models import ServiceType


TEMP_PREFIX = ".filesync-"


class LocalEndpoint(BaseStorageEndpoint):
    """Files on a locally mounted filesystem.

    The cache scope (servicesession) of a mapping root is its absolute path.
    Writes land in a temporary sibling first and are renamed into place, so a
    reader never sees a partially written file.
    """

    scheme = "file"
    servicetype = ServiceType.LOCAL

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.chunk_size = self.settings.sync.checksum_chunk_size

    def path_for(self, url: str) -> Path:
        parsed = self.check_url(url)
        if parsed.netloc not in ("", "localhost"):
            raise InvalidUrlError(f"Remote host in file URL: {parsed.netloc}", url=url)
        path = unquote(parsed.path)
        if not path.startswith("/"):
            raise InvalidUrlError("File URL must carry an absolute path", url=url)
        return Path(path)

    def url_for(self, path: Path) -> str:
        return "file://" + quote(str(path), safe="/")

    def servicesession(self, root_url: str) -> str:
        return str(self.path_for(root_url))

    async def resolve(self, url: str) -> str:
        return str(self.path_for(url))

    async def list(self, root_url: str, on_error: Optional[ErrorCallback] = None) -> AsyncGenerator[EntryInfo, None]:
        root = self.path_for(root_url)
        pending = [root]
        listed = 0

        while pending:
            directory = pending.pop()
            try:
                files, subdirs, errors = await self._call(
                    "list", self._scan_dir, directory, url=self.url_for(directory)
                )
            except StorageError as e:
                if directory == root:
                    raise
                self._report(on_error, self.url_for(directory), e)
                continue

            for path, exc in errors:
                url = self.url_for(path)
                self._report(on_error, url, self.classify_error(exc, url) or exc)

            for path, st in files:
                listed += 1
                yield EntryInfo(
                    url=self.url_for(path),
                    filename=path.name,
                    filepath=str(path.parent),
                    serviceid=str(root),
                    relative_path=path.relative_to(root).as_posix(),
                    size=st.st_size,
                    mtime=int(st.st_mtime)
                )

            pending.extend(reversed(subdirs))

        self.metrics.increment_counter("endpoint.local.entries_listed", listed)
        self.logger.debug("Local listing completed", root=str(root), entries=listed)

    def _scan_dir(self, directory: Path) -> Tuple[List[Tuple[Path, os.stat_result]], List[Path], List[Tuple[Path, OSError]]]:
        """One directory level: (files with stat, subdirectories, per entry errors)."""
        files, subdirs, errors = [], [], []
        with os.scandir(directory) as it:
            for entry in sorted(it, key=lambda e: e.name):
                if entry.name.startswith(TEMP_PREFIX):
                    continue
                try:
                    if entry.is_dir(follow_symlinks=False):
                        subdirs.append(Path(entry.path))
                    elif entry.is_file():
                        files.append((Path(entry.path), entry.stat()))
                except OSError as e:
                    errors.append((Path(entry.path), e))
        return files, subdirs, errors

    def _report(self, on_error: Optional[ErrorCallback], url: str, exc: Exception):
        self.logger.warning("Skipping unreadable entry", url=url, error=str(exc))
        if on_error is not None:
            on_error(url, exc)

    async def stat(self, url: str) -> EntryInfo:
        path = self.path_for(url)
        st = await self._call("stat", os.stat, path, url=url)
        return EntryInfo(
            url=normalize_url(url),
            filename=path.name,
            filepath=str(path.parent),
            size=st.st_size,
            mtime=int(st.st_mtime),
            is_directory=path.is_dir()
        )

    def open_stream(self, url: str) -> BinaryIO:
        return open(self.path_for(url), "rb")

    async def write(self, url: str, stream: BinaryIO, mtime: Optional[int] = None) -> EntryInfo:
        path = self.path_for(url)
        await self._call("write", self._write_file, path, stream, mtime, url=url)
        self.metrics.increment_counter("endpoint.local.files_written")
        return await self.stat(url)

    def _write_file(self, path: Path, stream: BinaryIO, mtime: Optional[int]):
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as out:
                shutil.copyfileobj(stream, out, self.chunk_size)
                out.flush()
                os.fsync(out.fileno())
            os.replace(tmp_name, path)
        except Exception:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        if mtime is not None:
            os.utime(path, (mtime, mtime))

    async def delete(self, url: str):
        path = self.path_for(url)
        await self._call("delete", os.remove, path, url=url)
        self.logger.info("Local file deleted", path=str(path))

    def classify_error(self, exc: Exception, url: Optional[str] = None) -> Optional[StorageError]:
        if isinstance(exc, FileNotFoundError):
            return NotFoundError(str(exc), url=url)
        if isinstance(exc, (PermissionError, IsADirectoryError, NotADirectoryError)):
            return PermanentBackendError(str(exc), url=url)
        if isinstance(exc, OSError):
            if exc.errno in (errno.ENOSPC, errno.EDQUOT, errno.EROFS, errno.ENAMETOOLONG):
                return PermanentBackendError(str(exc), url=url)
            return TransientBackendError(str(exc), url=url)
        return None
