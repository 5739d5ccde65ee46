"""Application configuration settings."""

from typing import Optional
from pydantic_settings import BaseSettings


class DatabaseSettings(BaseSettings):
    """Cache database configuration."""

    url: str = "sqlite:///./data/filesync.db"
    echo: bool = False

    class Config:
        env_prefix = "DB_"


class GoogleDriveSettings(BaseSettings):
    """Google Drive API configuration."""

    # One credentials file per session: <credentials_dir>/<session>.json
    credentials_dir: str = "./secrets/gdrive"
    application_name: str = "File Sync"
    rate_limit_calls: int = 100
    rate_limit_window: float = 100.0
    page_size: int = 1000

    class Config:
        env_prefix = "GOOGLE_"


class S3Settings(BaseSettings):
    """Object store (S3) configuration."""

    region_name: Optional[str] = None
    endpoint_url: Optional[str] = None
    profile_name: Optional[str] = None
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    max_pool_connections: int = 16

    class Config:
        env_prefix = "S3_"


class SyncSettings(BaseSettings):
    """Planner / executor tuning."""

    max_attempts: int = 3
    retry_backoff_seconds: float = 30.0
    backend_timeout_seconds: float = 120.0
    checksum_workers: Optional[int] = None  # None = logical CPU count
    checksum_chunk_size: int = 1024 * 1024
    max_concurrent_actions: int = 4
    max_concurrent_syncs: int = 2
    blacklist_match_type: str = "prefix"

    class Config:
        env_prefix = "SYNC_"


class ServerSettings(BaseSettings):
    """Control plane HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = 3084

    class Config:
        env_prefix = "SERVER_"


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    file_path: Optional[str] = "./logs/filesync.log"

    class Config:
        env_prefix = "LOG_"


class AppSettings(BaseSettings):
    """Main application settings."""

    name: str = "File Sync"
    version: str = "0.1.0"
    environment: str = "development"
    config_file: Optional[str] = None

    # Sub-settings
    database: DatabaseSettings = DatabaseSettings()
    google_drive: GoogleDriveSettings = GoogleDriveSettings()
    s3: S3Settings = S3Settings()
    sync: SyncSettings = SyncSettings()
    server: ServerSettings = ServerSettings()
    logging: LoggingSettings = LoggingSettings()

    class Config:
        env_prefix = "FILESYNC_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "allow"


# Global settings instance
settings = AppSettings()


def get_settings() -> AppSettings:
    """Get application settings."""
    return settings
