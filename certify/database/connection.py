"""
Database Connection Configuration

Handles PostgreSQL connection setup, session management, and configuration.
DATABASE_URL overrides the composed PostgreSQL URL (e.g. SQLite for local runs).
"""

import os
from typing import Optional, Generator
from sqlalchemy import create_engine, Engine, event, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import SQLAlchemyError
from contextlib import contextmanager
import logging

from .models import Base

# Configure logging
logger = logging.getLogger(__name__)


class DatabaseConfig:
    """Database configuration management"""

    def __init__(self):
        # Explicit URL wins over the individual parameters
        self.url_override = os.getenv("DATABASE_URL")

        # Database connection parameters from environment
        self.host = os.getenv("DB_HOST", "localhost")
        self.port = int(os.getenv("DB_PORT", "5432"))
        self.database = os.getenv("DB_NAME", "certify")
        self.username = os.getenv("DB_USER", "certify_user")
        self.password = os.getenv("DB_PASSWORD", "certify_password")

        # Connection pool settings
        self.pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        self.max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "20"))
        self.pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", "30"))
        self.pool_recycle = int(os.getenv("DB_POOL_RECYCLE", "3600"))

        # Connection options
        self.echo = os.getenv("DB_ECHO", "false").lower() == "true"

    @property
    def database_url(self) -> str:
        """Build database connection URL"""
        if self.url_override:
            return self.url_override
        return f"postgresql://{self.username}:{self.password}@{self.host}:{self.port}/{self.database}"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def validate_config(self) -> tuple[bool, Optional[str]]:
        """Validate database configuration"""
        if self.url_override:
            return True, None
        if not self.host:
            return False, "DB_HOST is required"
        if not self.database:
            return False, "DB_NAME is required"
        if not self.username:
            return False, "DB_USER is required"
        if not self.password:
            return False, "DB_PASSWORD is required"

        return True, None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """Database connection and session management"""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def engine(self) -> Engine:
        """Get or create database engine"""
        if self._engine is None:
            if self.config.is_sqlite:
                self._engine = create_engine(
                    self.config.database_url,
                    echo=self.config.echo,
                    connect_args={"check_same_thread": False},
                )
                event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)
            else:
                self._engine = create_engine(
                    self.config.database_url,
                    poolclass=QueuePool,
                    pool_size=self.config.pool_size,
                    max_overflow=self.config.max_overflow,
                    pool_timeout=self.config.pool_timeout,
                    pool_recycle=self.config.pool_recycle,
                    echo=self.config.echo,
                )
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        """Get or create session factory"""
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autoflush=False,
                expire_on_commit=False
            )
        return self._session_factory

    def get_session(self) -> Session:
        """Create a new database session"""
        return self.session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Provide a transactional scope around database operations"""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def test_connection(self) -> tuple[bool, Optional[str]]:
        """Test database connection"""
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True, None
        except SQLAlchemyError as e:
            return False, str(e)

    def create_tables(self, drop_first: bool = False) -> bool:
        """Create database tables"""
        try:
            if drop_first:
                Base.metadata.drop_all(bind=self.engine)
                logger.warning("Dropped all existing tables")

            Base.metadata.create_all(bind=self.engine)
            logger.info("Successfully created database tables")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to create tables: {e}")
            return False

    def close(self):
        """Close database connections"""
        if self._engine:
            self._engine.dispose()
            self._engine = None
        self._session_factory = None
        logger.info("Database connections closed")


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_database_manager() -> DatabaseManager:
    """Get or create global database manager"""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def init_database(drop_first: bool = False) -> tuple[bool, Optional[str]]:
    """Initialize database with tables"""
    config = DatabaseConfig()
    is_valid, error_msg = config.validate_config()
    if not is_valid:
        return False, f"Configuration error: {error_msg}"

    db_manager = get_database_manager()
    connection_ok, connection_error = db_manager.test_connection()
    if not connection_ok:
        return False, f"Connection error: {connection_error}"

    if not db_manager.create_tables(drop_first=drop_first):
        return False, "Failed to create database tables"

    return True, "Database initialized successfully"


def close_database():
    """Close database connections"""
    global _db_manager
    if _db_manager:
        _db_manager.close()
        _db_manager = None
