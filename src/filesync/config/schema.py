"""Schema of the declarative mappings file."""

from typing import List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, validator

from ..database.models import BlacklistMatchType


SUPPORTED_SCHEMES = ("file", "s3", "gdrive")


def _check_url(v: str) -> str:
    scheme = urlparse(v).scheme
    if scheme not in SUPPORTED_SCHEMES:
        raise ValueError(f"Unsupported URL scheme '{scheme}', expected one of: {list(SUPPORTED_SCHEMES)}")
    return v


class MappingConfig(BaseModel):
    """One source/destination pair."""

    name: Optional[str] = Field(None, description="Unique mapping name")
    src_url: str = Field(..., description="Source root URL")
    dst_url: str = Field(..., description="Destination root URL")
    bidirectional: bool = Field(default=False, description="Destination-only entries are copied back")

    @validator('src_url', 'dst_url')
    def validate_url(cls, v):
        return _check_url(v)


class BlacklistConfig(BaseModel):
    """One exclusion rule."""

    url: str = Field(..., description="URL, URL prefix or pattern")
    match_type: BlacklistMatchType = Field(default=BlacklistMatchType.PREFIX)


class SyncConfig(BaseModel):
    """Root of a mappings file."""

    version: str = Field(default="1.0.0", description="Configuration version")
    environment: str = Field(default="development")

    mappings: List[MappingConfig] = Field(default_factory=list)
    blacklist: List[BlacklistConfig] = Field(default_factory=list)

    # Optional overrides of the environment settings
    database_url: Optional[str] = Field(None, description="Database URL override")
    log_level: Optional[str] = Field(None, description="Logging level override")

    @validator('log_level')
    def validate_log_level(cls, v):
        if v is None:
            return v
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('mappings')
    def validate_unique_names(cls, v):
        names = [m.name for m in v if m.name]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate mapping names: {sorted(duplicates)}")
        return v

    def get_mapping(self, name: str) -> Optional[MappingConfig]:
        for mapping in self.mappings:
            if mapping.name == name:
                return mapping
        return None


EXAMPLE_CONFIG = {
    "version": "1.0.0",
    "mappings": [
        {
            "name": "photos",
            "src_url": "file:///home/user/Pictures",
            "dst_url": "s3://photo-backup/Pictures",
        },
        {
            "name": "documents",
            "src_url": "file:///home/user/Documents",
            "dst_url": "gdrive://user@example.com/My Drive/Documents",
            "bidirectional": True,
        },
    ],
    "blacklist": [
        {"url": "file:///home/user/Documents/.cache"},
        {"url": "*.tmp", "match_type": "glob"},
    ],
}
