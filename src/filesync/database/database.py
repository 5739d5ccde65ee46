"""Database connection and session management."""

import os
from typing import Generator, Optional
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import Base
from ..config.settings import get_settings
from ..utils.logging import get_logger


logger = get_logger("database")


class DatabaseManager:
    """Database connection and session manager."""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        """Initialize database manager."""
        self.settings = get_settings()
        self.database_url = database_url or self.settings.database.url
        echo = self.settings.database.echo if echo is None else echo

        if self.database_url.startswith("sqlite"):
            # A single connection keeps an in-memory database alive across sessions
            self.engine = create_engine(
                self.database_url,
                poolclass=StaticPool,
                connect_args={
                    "check_same_thread": False,
                    "timeout": 20
                },
                echo=echo
            )
            event.listen(self.engine, "connect", _configure_sqlite)
        else:
            self.engine = create_engine(
                self.database_url,
                pool_pre_ping=True,
                pool_recycle=300,
                echo=echo
            )

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        )

        logger.info("Database manager initialized", database_url=self.database_url)

    def create_tables(self):
        """Create all database tables."""
        try:
            if self.database_url.startswith("sqlite:///") and ":memory:" not in self.database_url:
                db_dir = os.path.dirname(self.database_url.replace("sqlite:///", ""))
                if db_dir:
                    os.makedirs(db_dir, exist_ok=True)

            Base.metadata.create_all(bind=self.engine)
            logger.info("Database tables created successfully")
        except Exception as e:
            logger.error("Failed to create database tables", error=str(e))
            raise

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Provide a transactional scope around a series of operations."""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.debug("Database transaction rolled back", error=str(e))
            raise
        finally:
            session.close()

    def test_connection(self) -> bool:
        """Test database connection."""
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database connection test failed", error=str(e))
            return False

    def dispose(self):
        self.engine.dispose()


def _configure_sqlite(dbapi_connection, connection_record):
    """Foreign keys on; WAL so planners can read while the executor writes."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get the global database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def init_database(database_url: Optional[str] = None, create_tables: bool = True) -> DatabaseManager:
    """Initialize the global database."""
    global _db_manager
    _db_manager = DatabaseManager(database_url)

    if create_tables:
        _db_manager.create_tables()

    if not _db_manager.test_connection():
        raise RuntimeError("Failed to establish database connection")

    return _db_manager


def close_database():
    """Close database connections."""
    global _db_manager
    if _db_manager:
        _db_manager.dispose()
        _db_manager = None
        logger.info("Database connections closed")
