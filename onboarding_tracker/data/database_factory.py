"""
Database factory for the onboarding session tracker.
Owns the engine and session factory; constructed explicitly by the process
entry point and passed to whatever needs it.
"""

import logging
import re
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config.config import DatabaseConfig

from .models import Base

logger = logging.getLogger(__name__)


class DatabaseFactory:
    """Engine/session management for one database."""

    def __init__(self, database_config: Optional[DatabaseConfig] = None):
        self.database_config = database_config or DatabaseConfig()
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_config.dsn.startswith("sqlite")

    def initialize(self) -> None:
        """Initialize database engine and session factory (idempotent)"""
        if self._engine is not None:
            logger.debug("Database factory already initialized")
            return

        engine_kwargs = {
            "pool_size": self.database_config.pool_size,
            "max_overflow": self.database_config.max_overflow,
            "echo": self.database_config.echo,
            "pool_pre_ping": True,
        }

        # Handle SQLite vs PostgreSQL
        if self.is_sqlite:
            engine_kwargs.update({
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            })
            engine_kwargs.pop("pool_size", None)
            engine_kwargs.pop("max_overflow", None)

        try:
            self._engine = create_engine(self.database_config.dsn, **engine_kwargs)
        except Exception as e:
            logger.error("Failed to initialize database factory: %s", e)
            raise
        self._setup_connection_events()

        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )
        logger.info("Database factory initialized with DSN: %s", self._mask_dsn(self.database_config.dsn))

    def _setup_connection_events(self) -> None:
        """Setup SQLAlchemy connection event listeners"""
        is_sqlite = self.is_sqlite

        @event.listens_for(self._engine, "connect")
        def set_connection_settings(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            if is_sqlite:
                cursor.execute("PRAGMA foreign_keys=ON")
            else:
                cursor.execute("SET timezone TO 'UTC'")
            cursor.close()

    @staticmethod
    def _mask_dsn(dsn: str) -> str:
        """Mask password in DSN for logging"""
        return re.sub(r"(://[^:]+:)([^@]+)(@)", r"\1****\3", dsn)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self.initialize()
        return self._engine

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get database session with automatic transaction management"""
        if self._session_factory is None:
            self.initialize()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("Database session error: %s", e)
            raise
        finally:
            session.close()

    def health_check(self) -> bool:
        """Check database connection health"""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed: %s", e)
            return False

    def create_all_tables(self) -> None:
        """Create all database tables"""
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("All database tables created successfully")
        except Exception as e:
            logger.error("Failed to create database tables: %s", e)
            raise

    def close(self) -> None:
        """Close database connections and reset factory"""
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database connections closed")

        self._engine = None
        self._session_factory = None
