"""Object store endpoint (``s3://bucket/key`` URLs)."""

import posixpath
from typing import Any, AsyncGenerator, BinaryIO, Dict, Optional
from urllib.parse import quote, unquote

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError
)

from .base import (
    BaseStorageEndpoint, EntryInfo, ErrorCallback, normalize_url,
    StorageError, NotFoundError, InvalidUrlError, TransientBackendError, RateLimitError,
    PermanentBackendError, AuthenticationError
)
from ..database.models import ServiceType


NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
THROTTLE_CODES = {"SlowDown", "Throttling", "ThrottlingException", "RequestLimitExceeded", "TooManyRequests"}
TRANSIENT_CODES = {"RequestTimeout", "InternalError", "ServiceUnavailable", "503", "500"}
AUTH_CODES = {"AccessDenied", "403", "InvalidAccessKeyId", "SignatureDoesNotMatch", "ExpiredToken"}

MTIME_METADATA_KEY = "mtime"


def metadata_mtime(metadata: Optional[Dict[str, str]]) -> Optional[int]:
    """The source mtime stored in object metadata by ``write``, if any."""
    value = (metadata or {}).get(MTIME_METADATA_KEY)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def etag_md5(etag: Optional[str]) -> Optional[str]:
    """The md5 carried by a single-part ETag; multipart ETags carry none."""
    if not etag:
        return None
    etag = etag.strip('"')
    if "-" in etag or len(etag) != 32:
        return None
    return etag.lower()


class S3Endpoint(BaseStorageEndpoint):
    """Objects in S3 compatible buckets.

    The servicesession of a root is its bucket. Keys ending in ``/`` are
    folder placeholders and are never listed as files.
    """

    scheme = "s3"
    servicetype = ServiceType.S3

    def __init__(self, client: Any = None, **kwargs):
        super().__init__(**kwargs)
        self._client = client

    @property
    def client(self):
        if self._client is None:
            s3 = self.settings.s3
            session = boto3.session.Session(profile_name=s3.profile_name)
            self._client = session.client(
                "s3",
                region_name=s3.region_name,
                endpoint_url=s3.endpoint_url,
                config=BotoConfig(
                    connect_timeout=s3.connect_timeout,
                    read_timeout=s3.read_timeout,
                    retries={"max_attempts": 3, "mode": "standard"},
                    max_pool_connections=s3.max_pool_connections
                )
            )
            self.logger.info("S3 client created", region=s3.region_name, endpoint_url=s3.endpoint_url)
        return self._client

    def bucket_and_key(self, url: str):
        parsed = self.check_url(url)
        if not parsed.netloc:
            raise InvalidUrlError("S3 URL has no bucket", url=url)
        return parsed.netloc, unquote(parsed.path).lstrip("/")

    def url_for(self, bucket: str, key: str) -> str:
        return f"s3://{bucket}/" + quote(key, safe="/")

    def servicesession(self, root_url: str) -> str:
        return self.bucket_and_key(root_url)[0]

    async def resolve(self, url: str) -> str:
        bucket, key = self.bucket_and_key(url)
        return key

    async def list(self, root_url: str, on_error: Optional[ErrorCallback] = None) -> AsyncGenerator[EntryInfo, None]:
        bucket, prefix = self.bucket_and_key(root_url)
        if prefix and not prefix.endswith("/"):
            prefix += "/"

        params: Dict[str, Any] = {"Bucket": bucket, "Prefix": prefix}
        listed = 0

        while True:
            page = await self._call("list", self.client.list_objects_v2, url=root_url, **params)

            for obj in page.get("Contents", []):
                key = obj["Key"]
                if key.endswith("/"):
                    continue
                listed += 1
                last_modified = int(obj["LastModified"].timestamp())
                yield EntryInfo(
                    url=self.url_for(bucket, key),
                    filename=posixpath.basename(key),
                    filepath=posixpath.dirname(key),
                    serviceid=bucket,
                    relative_path=key[len(prefix):],
                    size=int(obj.get("Size", 0)),
                    mtime=last_modified,
                    md5sum=etag_md5(obj.get("ETag")),
                    backend_mtime=last_modified
                )

            if not page.get("IsTruncated"):
                break
            params["ContinuationToken"] = page["NextContinuationToken"]

        self.metrics.increment_counter("endpoint.s3.entries_listed", listed)
        self.logger.debug("S3 listing completed", bucket=bucket, prefix=prefix, entries=listed)

    async def stat(self, url: str) -> EntryInfo:
        bucket, key = self.bucket_and_key(url)
        head = await self._call("stat", self.client.head_object, url=url, Bucket=bucket, Key=key)
        last_modified = int(head["LastModified"].timestamp())
        mtime = metadata_mtime(head.get("Metadata"))
        return EntryInfo(
            url=normalize_url(url),
            filename=posixpath.basename(key),
            filepath=posixpath.dirname(key),
            serviceid=bucket,
            size=int(head.get("ContentLength", 0)),
            mtime=mtime if mtime is not None else last_modified,
            md5sum=etag_md5(head.get("ETag")),
            backend_mtime=last_modified
        )

    def open_stream(self, url: str) -> BinaryIO:
        bucket, key = self.bucket_and_key(url)
        try:
            return self.client.get_object(Bucket=bucket, Key=key)["Body"]
        except ClientError as e:
            raise self.classify_error(e, url) from e

    async def write(self, url: str, stream: BinaryIO, mtime: Optional[int] = None) -> EntryInfo:
        bucket, key = self.bucket_and_key(url)
        extra_args = {"Metadata": {MTIME_METADATA_KEY: str(mtime)}} if mtime is not None else None
        await self._call(
            "write", self.client.upload_fileobj, stream, bucket, key,
            url=url, ExtraArgs=extra_args
        )
        self.metrics.increment_counter("endpoint.s3.objects_written")
        return await self.stat(url)

    async def delete(self, url: str):
        bucket, key = self.bucket_and_key(url)
        await self._call("delete", self.client.delete_object, url=url, Bucket=bucket, Key=key)
        self.logger.info("S3 object deleted", bucket=bucket, key=key)

    def classify_error(self, exc: Exception, url: Optional[str] = None) -> Optional[StorageError]:
        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {})
            code = str(error.get("Code", ""))
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
            message = error.get("Message") or str(exc)

            if code in NOT_FOUND_CODES or status == 404:
                return NotFoundError(message, url=url)
            if code in THROTTLE_CODES or status == 429:
                return RateLimitError(message, url=url)
            if code in AUTH_CODES or status in (401, 403):
                return AuthenticationError(message, url=url)
            if code in TRANSIENT_CODES or status >= 500:
                return TransientBackendError(message, url=url)
            return PermanentBackendError(message, url=url)

        if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
            return AuthenticationError(str(exc), url=url)

        if isinstance(exc, (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError)):
            return TransientBackendError(str(exc), url=url)

        if isinstance(exc, S3UploadFailedError):
            if "AccessDenied" in str(exc):
                return AuthenticationError(str(exc), url=url)
            return TransientBackendError(str(exc), url=url)

        return None
