"""Configuration package.

Only settings are re-exported here; ``filesync.config.loader`` and
``filesync.config.manager`` depend on logging and the cache stores, which
themselves read settings, so they are imported from their modules.
"""

from .settings import (
    DatabaseSettings,
    GoogleDriveSettings,
    S3Settings,
    SyncSettings,
    ServerSettings,
    LoggingSettings,
    AppSettings,
    get_settings
)

__all__ = [
    "DatabaseSettings",
    "GoogleDriveSettings",
    "S3Settings",
    "SyncSettings",
    "ServerSettings",
    "LoggingSettings",
    "AppSettings",
    "get_settings"
]
