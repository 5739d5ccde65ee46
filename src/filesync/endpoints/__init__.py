"""Storage endpoints.

Backends live in their own modules and are built by
``filesync.endpoints.factory.EndpointFactory``; the drive backend depends on
the directory cache, which in turn raises the errors defined here, so only
the base interface is re-exported.
"""

from .base import (
    BaseStorageEndpoint,
    EntryInfo,
    normalize_url,
    StorageError,
    NotFoundError,
    InvalidUrlError,
    UnresolvableError,
    TransientBackendError,
    RateLimitError,
    PermanentBackendError,
    AuthenticationError
)

__all__ = [
    "BaseStorageEndpoint",
    "EntryInfo",
    "normalize_url",
    "StorageError",
    "NotFoundError",
    "InvalidUrlError",
    "UnresolvableError",
    "TransientBackendError",
    "RateLimitError",
    "PermanentBackendError",
    "AuthenticationError"
]
