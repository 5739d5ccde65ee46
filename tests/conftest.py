"""Shared fixtures: in-memory database, fast settings and local trees."""

import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from filesync.config.settings import AppSettings, LoggingSettings, SyncSettings
from filesync.core import FileSyncConnector
from filesync.database import DatabaseManager
from filesync.performance import MetricsCollector


@pytest.fixture
def settings():
    return AppSettings(
        sync=SyncSettings(
            max_attempts=3,
            retry_backoff_seconds=0.0,
            backend_timeout_seconds=10.0,
            checksum_workers=2,
            checksum_chunk_size=4,
            max_concurrent_actions=2
        ),
        logging=LoggingSettings(file_path=None)
    )


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def db_manager():
    manager = DatabaseManager("sqlite:///:memory:")
    manager.create_tables()
    yield manager
    manager.dispose()


@pytest_asyncio.fixture
async def connector(db_manager, settings, metrics):
    conn = FileSyncConnector(db_manager=db_manager, settings=settings, metrics=metrics)
    yield conn
    await conn.close()


def write_file(path: Path, content: bytes, mtime: int) -> Path:
    """Create ``path`` with ``content`` and a fixed mtime."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    os.utime(path, (mtime, mtime))
    return path


def file_url(path: Path) -> str:
    return path.as_uri()
