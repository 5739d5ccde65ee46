"""Google Drive endpoint (``gdrive://<session>/<root name>/<path>`` URLs)."""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncGenerator, BinaryIO, Dict, List, Optional, Tuple
from urllib.parse import quote, unquote

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload
import google.auth.exceptions

from .base import (
    BaseStorageEndpoint, EntryInfo, ErrorCallback,
    StorageError, NotFoundError, InvalidUrlError, UnresolvableError, TransientBackendError,
    RateLimitError, PermanentBackendError, AuthenticationError
)
from ..cache.directory_tree import DirectoryMap, DirectoryTree
from ..database.models import DirectoryRecord, ServiceType
from ..performance import AsyncRateLimiter
from ..utils.logging import log_async_execution_time


FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
NATIVE_MIME_PREFIX = "application/vnd.google-apps."
FILE_FIELDS = "id, name, parents, size, md5Checksum, modifiedTime, mimeType"
SPOOL_MAX_BYTES = 16 * 1024 * 1024


def parse_timestamp(value: Optional[str]) -> int:
    """Epoch seconds of an RFC 3339 Drive timestamp."""
    if not value:
        return 0
    return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp())


def format_timestamp(mtime: int) -> str:
    return datetime.fromtimestamp(mtime, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def escape_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class GoogleDriveEndpoint(BaseStorageEndpoint):
    """Files in a Google Drive account.

    Drive addresses items by opaque ids; paths are derived from the folder
    tree kept in the DirectoryTree cache. The first path segment names a
    root folder (``My Drive`` for the account's own drive). Google native
    documents have no binary content and are skipped.
    """

    scheme = "gdrive"
    servicetype = ServiceType.GDRIVE

    def __init__(
        self,
        directory_tree: DirectoryTree,
        service: Any = None,
        credentials_dir: Optional[str] = None,
        **kwargs
    ):
        """Initialize the drive endpoint.

        Args:
            directory_tree: Store for the folder hierarchy
            service: Prebuilt drive v3 service; built per session when omitted
            credentials_dir: Directory holding ``<session>.json`` service account keys
        """
        super().__init__(**kwargs)
        gdrive = self.settings.google_drive
        self.directory_tree = directory_tree
        self.credentials_dir = credentials_dir or gdrive.credentials_dir
        self.page_size = gdrive.page_size
        self.scopes = ["https://www.googleapis.com/auth/drive"]
        self.rate_limiter = AsyncRateLimiter(
            max_calls=gdrive.rate_limit_calls,
            time_window=gdrive.rate_limit_window
        )
        self._default_service = service
        self._services: Dict[str, Any] = {}
        self._maps: Dict[str, DirectoryMap] = {}

    # Sessions and URLs

    def service_for(self, session: str):
        if self._default_service is not None:
            return self._default_service
        if session not in self._services:
            credentials_path = Path(self.credentials_dir) / f"{session}.json"
            if not credentials_path.exists():
                raise AuthenticationError(f"Credentials file not found: {credentials_path}")
            try:
                credentials = service_account.Credentials.from_service_account_file(
                    str(credentials_path), scopes=self.scopes
                )
            except (ValueError, google.auth.exceptions.GoogleAuthError) as e:
                raise AuthenticationError(f"Invalid credentials for {session}: {e}") from e
            self._services[session] = build("drive", "v3", credentials=credentials, cache_discovery=False)
            self.logger.info("Google Drive service built", session=session)
        return self._services[session]

    def parse(self, url: str) -> Tuple[str, List[str]]:
        """(session, path segments) of a drive URL."""
        parsed = self.check_url(url)
        if not parsed.netloc:
            raise InvalidUrlError("Drive URL has no session", url=url)
        segments = [s for s in unquote(parsed.path).split("/") if s]
        if not segments:
            raise InvalidUrlError("Drive URL has no root folder", url=url)
        return parsed.netloc, segments

    def url_for(self, session: str, segments: List[str]) -> str:
        return f"gdrive://{session}/" + quote("/".join(segments), safe="/")

    def servicesession(self, root_url: str) -> str:
        return self.parse(root_url)[0]

    async def _call(self, operation: str, func, *args, url: Optional[str] = None, **kwargs):
        async with self.rate_limiter.limit():
            self.metrics.increment_counter("google_drive.api_calls")
            return await super()._call(operation, func, *args, url=url, **kwargs)

    def _execute(self, request):
        """Execute Google API request (to be run in thread pool)."""
        return request.execute()

    # Directory tree

    def directory_map(self, session: str) -> DirectoryMap:
        if session not in self._maps:
            self._maps[session] = self.directory_tree.load_map(self.servicetype, session)
        return self._maps[session]

    @log_async_execution_time
    async def refresh_directories(self, session: str, on_error: Optional[ErrorCallback] = None) -> DirectoryMap:
        """Fetch every folder of the account and replace the cached tree."""
        service = self.service_for(session)
        root = await self._call(
            "refresh_directories",
            self._execute, service.files().get(fileId="root", fields="id, name")
        )
        folders = await self._call(
            "refresh_directories",
            self._list_all, service, f"mimeType = '{FOLDER_MIME_TYPE}' and trashed = false", "id, name, parents"
        )

        records = [DirectoryRecord(
            directory_id=root["id"],
            directory_name=root.get("name", "My Drive"),
            is_root=True,
            servicesession=session
        )]
        for folder in folders:
            if folder["id"] == root["id"]:
                continue
            parents = folder.get("parents") or []
            records.append(DirectoryRecord(
                directory_id=folder["id"],
                directory_name=folder["name"],
                parent_id=parents[0] if parents else None,
                is_root=not parents,
                servicesession=session
            ))

        dmap, dropped = self.directory_tree.replace_tree(self.servicetype, session, records)
        for error in dropped:
            if on_error is not None:
                on_error(f"gdrive://{session}/?id={error.identity}", UnresolvableError(error.message))

        self._maps[session] = dmap
        return dmap

    def _list_all(self, service, query: str, fields: str) -> List[Dict[str, Any]]:
        """Blocking: every page of a files.list query."""
        items: List[Dict[str, Any]] = []
        page_token = None
        while True:
            result = self._execute(service.files().list(
                q=query,
                fields=f"nextPageToken, files({fields})",
                pageSize=self.page_size,
                pageToken=page_token
            ))
            items.extend(result.get("files", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                return items

    # Operations

    async def resolve(self, url: str) -> str:
        session, segments = self.parse(url)
        dmap = self.directory_map(session)
        return await self._call("resolve", self._resolve_with_map, session, segments, dmap, url=url)

    def _resolve_with_map(self, session: str, segments: List[str], dmap: DirectoryMap) -> str:
        """Blocking: id of the folder or file named by ``segments``."""
        try:
            return dmap.resolve(segments)[-1]
        except UnresolvableError:
            if len(segments) < 2:
                raise
        parent_id = dmap.resolve(segments[:-1])[-1]
        item = self._find_child(session, parent_id, segments[-1])
        if item is None:
            raise NotFoundError(f"No item named '{segments[-1]}' under {'/'.join(segments[:-1])}")
        return item["id"]

    def _find_child(self, session: str, parent_id: str, name: str) -> Optional[Dict[str, Any]]:
        query = f"name = '{escape_query(name)}' and '{parent_id}' in parents and trashed = false"
        result = self._execute(self.service_for(session).files().list(
            q=query, fields=f"files({FILE_FIELDS})", pageSize=10
        ))
        files = [f for f in result.get("files", []) if f.get("mimeType") != FOLDER_MIME_TYPE]
        return files[0] if files else None

    async def list(self, root_url: str, on_error: Optional[ErrorCallback] = None) -> AsyncGenerator[EntryInfo, None]:
        session, root_segments = self.parse(root_url)
        dmap = await self.refresh_directories(session, on_error)
        root_id = dmap.resolve(root_segments)[-1]

        # Folder ids inside the root, root included
        inside = {root_id}
        for directory_id in dmap.nodes:
            if directory_id not in inside and root_id in self._ancestors(dmap, directory_id):
                inside.add(directory_id)

        files = await self._call(
            "list",
            self._list_all, self.service_for(session),
            f"mimeType != '{FOLDER_MIME_TYPE}' and trashed = false", FILE_FIELDS,
            url=root_url
        )

        seen_urls = set()
        listed = 0
        for item in sorted(files, key=lambda f: (f.get("name", ""), f["id"])):
            parents = item.get("parents") or []
            if not parents or parents[0] not in inside:
                continue
            if item.get("mimeType", "").startswith(NATIVE_MIME_PREFIX):
                continue

            segments = dmap.path_of(parents[0]) + [item["name"]]
            url = self.url_for(session, segments)
            if url in seen_urls:
                self._report(on_error, url, PermanentBackendError(
                    f"Duplicate name in folder, file id {item['id']} skipped", url=url
                ))
                continue
            seen_urls.add(url)

            listed += 1
            yield self._entry(session, item, segments, root_segments)

        self.metrics.increment_counter("google_drive.files_processed", listed)
        self.logger.info("Google Drive listing completed", root=root_url, entries=listed)

    def _ancestors(self, dmap: DirectoryMap, directory_id: str) -> List[str]:
        ancestors = []
        seen = set()
        node = dmap.get(directory_id)
        while node is not None and not node.is_root and node.parent_id not in seen:
            seen.add(node.parent_id)
            ancestors.append(node.parent_id)
            node = dmap.get(node.parent_id)
        return ancestors

    def _entry(
        self,
        session: str,
        item: Dict[str, Any],
        segments: List[str],
        root_segments: Optional[List[str]] = None
    ) -> EntryInfo:
        relative = ""
        if root_segments is not None:
            relative = "/".join(segments[len(root_segments):])
        return EntryInfo(
            url=self.url_for(session, segments),
            filename=segments[-1],
            filepath="/".join(segments[:-1]),
            serviceid=item["id"],
            relative_path=relative,
            size=int(item.get("size", 0)),
            mtime=parse_timestamp(item.get("modifiedTime")),
            is_directory=item.get("mimeType") == FOLDER_MIME_TYPE,
            md5sum=item.get("md5Checksum")
        )

    def _report(self, on_error: Optional[ErrorCallback], url: str, exc: Exception):
        self.logger.warning("Skipping drive entry", url=url, error=str(exc))
        if on_error is not None:
            on_error(url, exc)

    async def stat(self, url: str) -> EntryInfo:
        session, segments = self.parse(url)
        file_id = await self.resolve(url)
        item = await self._call(
            "stat",
            self._execute, self.service_for(session).files().get(fileId=file_id, fields=FILE_FIELDS),
            url=url
        )
        return self._entry(session, item, segments)

    async def read(self, url: str) -> BinaryIO:
        file_id = await self.resolve(url)
        session, _ = self.parse(url)
        return await self._call("read", self._download, session, file_id, url=url)

    def open_stream(self, url: str) -> BinaryIO:
        session, segments = self.parse(url)
        dmap = self._maps.get(session)
        if dmap is None:
            raise UnresolvableError(f"Directory tree of {session} not loaded", url=url)
        return self._download(session, self._resolve_with_map(session, segments, dmap))

    def _download(self, session: str, file_id: str) -> BinaryIO:
        buffer = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES)
        request = self.service_for(session).files().get_media(fileId=file_id)
        downloader = MediaIoBaseDownload(buffer, request)
        done = False
        while not done:
            _, done = downloader.next_chunk()
        buffer.seek(0)
        return buffer

    async def write(self, url: str, stream: BinaryIO, mtime: Optional[int] = None) -> EntryInfo:
        session, segments = self.parse(url)
        if len(segments) < 2:
            raise InvalidUrlError("Cannot write a drive root", url=url)
        dmap = self.directory_map(session)

        item, created = await self._call(
            "write", self._write_blocking, session, segments, dmap, stream, mtime, url=url
        )

        for record in created:
            self.directory_tree.upsert(record)
            dmap.insert(record)

        self.metrics.increment_counter("google_drive.files_written")
        return self._entry(session, item, segments)

    def _write_blocking(
        self,
        session: str,
        segments: List[str],
        dmap: DirectoryMap,
        stream: BinaryIO,
        mtime: Optional[int]
    ) -> Tuple[Dict[str, Any], List[DirectoryRecord]]:
        """Blocking: create missing folders, then create or update the file."""
        service = self.service_for(session)
        roots = dmap.child_ids(None, segments[0])
        if not roots:
            raise UnresolvableError(f"Unknown drive root '{segments[0]}'")

        parent_id = roots[0]
        created: List[DirectoryRecord] = []
        pending = DirectoryMap(dmap.nodes.values())
        for name in segments[1:-1]:
            children = pending.child_ids(parent_id, name)
            if children:
                parent_id = children[0]
                continue
            folder = self._execute(service.files().create(
                body={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]},
                fields="id, name"
            ))
            record = DirectoryRecord(
                directory_id=folder["id"],
                directory_name=name,
                parent_id=parent_id,
                servicesession=session
            )
            pending.insert(record)
            created.append(record)
            parent_id = folder["id"]

        if not stream.seekable():
            spooled = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES)
            while True:
                chunk = stream.read(1024 * 1024)
                if not chunk:
                    break
                spooled.write(chunk)
            spooled.seek(0)
            stream = spooled

        media = MediaIoBaseUpload(stream, mimetype="application/octet-stream", resumable=True)
        body: Dict[str, Any] = {}
        if mtime is not None:
            body["modifiedTime"] = format_timestamp(mtime)

        existing = self._find_child(session, parent_id, segments[-1])
        if existing is not None:
            item = self._execute(service.files().update(
                fileId=existing["id"], body=body, media_body=media, fields=FILE_FIELDS
            ))
        else:
            body.update({"name": segments[-1], "parents": [parent_id]})
            item = self._execute(service.files().create(body=body, media_body=media, fields=FILE_FIELDS))

        return item, created

    async def delete(self, url: str):
        session, segments = self.parse(url)
        file_id = await self.resolve(url)
        await self._call(
            "delete", self._execute, self.service_for(session).files().delete(fileId=file_id), url=url
        )

        dmap = self.directory_map(session)
        if file_id in dmap:
            self.directory_tree.remove(file_id, self.servicetype, session)
            dmap.remove_subtree(file_id)

        self.logger.info("Drive item deleted", url=url, file_id=file_id)

    def classify_error(self, exc: Exception, url: Optional[str] = None) -> Optional[StorageError]:
        if isinstance(exc, HttpError):
            status = exc.resp.status
            content = exc.content.decode("utf-8", "replace") if isinstance(exc.content, bytes) else str(exc.content)

            if status == 404:
                return NotFoundError(f"Google Drive item not found: {exc}", url=url)
            if status == 429 or (status == 403 and "ateLimitExceeded" in content):
                retry_after = exc.resp.get("retry-after") if isinstance(exc.resp, dict) else None
                return RateLimitError(
                    "Google Drive rate limit exceeded",
                    retry_after=int(retry_after) if retry_after else None,
                    url=url
                )
            if status == 401:
                return AuthenticationError(f"Google Drive authentication failed: {exc}", url=url)
            if status >= 500:
                return TransientBackendError(f"Google Drive API error: {exc}", url=url)
            return PermanentBackendError(f"Google Drive API error: {exc}", url=url)

        if isinstance(exc, google.auth.exceptions.RefreshError):
            return AuthenticationError(f"Google Drive credentials rejected: {exc}", url=url)
        if isinstance(exc, google.auth.exceptions.TransportError):
            return TransientBackendError(str(exc), url=url)
        if isinstance(exc, (ConnectionError, TimeoutError)):
            return TransientBackendError(str(exc), url=url)

        return None

    async def close(self):
        for service in self._services.values():
            http = getattr(service, "_http", None)
            if http is not None and hasattr(http, "close"):
                http.close()
        self._services.clear()
