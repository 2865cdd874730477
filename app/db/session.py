"""
Database session management for the approval engine.
Provides SQLAlchemy session management for PostgreSQL (production) and
SQLite (local development and tests).
"""

import logging
from typing import Generator, Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager

from app.core.settings import Settings, get_settings
from app.db.models import Base

logger = logging.getLogger(__name__)

_DEFAULT_DATABASE_URL = "sqlite:///./approvals.db"


class DatabaseSessionManager:
    """Manages database sessions and connections."""

    def __init__(self, database_url: Optional[str] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._database_url = database_url
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._initialize_database()

    def _get_database_url(self) -> str:
        """Get database URL from explicit argument or settings."""
        if self._database_url:
            return self._database_url

        if self.settings.database_url:
            return self.settings.database_url

        # Only fall back to a local SQLite file outside production
        if self.settings.is_production_mode():
            raise ValueError("DATABASE_URL must be set in production")
        return _DEFAULT_DATABASE_URL

    def _initialize_database(self):
        """Initialize database engine and session factory."""
        try:
            database_url = self._get_database_url()

            if database_url.startswith("sqlite") and ":memory:" in database_url:
                # One shared connection so every session sees the same in-memory database
                self._engine = create_engine(
                    database_url,
                    poolclass=StaticPool,
                    connect_args={"check_same_thread": False},
                    echo=self.settings.db_echo,
                )
            elif database_url.startswith("sqlite"):
                self._engine = create_engine(
                    database_url,
                    connect_args={"check_same_thread": False, "timeout": 30},
                    echo=self.settings.db_echo,
                )
            else:
                # Create engine with connection pooling
                self._engine = create_engine(
                    database_url,
                    pool_pre_ping=True,
                    pool_recycle=3600,  # 1 hour
                    echo=self.settings.db_echo,
                )

            # Create session factory
            self._session_factory = sessionmaker(
                bind=self._engine, autocommit=False, autoflush=False, expire_on_commit=False
            )

            # Create tables if they don't exist
            if self.settings.db_create_tables:
                Base.metadata.create_all(self._engine)

            logger.info("Database session manager initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    @property
    def engine(self) -> Engine:
        """Get database engine."""
        if not self._engine:
            self._initialize_database()
        assert self._engine is not None
        return self._engine

    def get_session(self) -> Session:
        """Get a new database session."""
        if not self._session_factory:
            self._initialize_database()
        assert self._session_factory is not None
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Provide a transactional scope around a series of operations."""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self):
        """Close the database engine."""
        if self._engine:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None


# Global database session manager
_db_manager: Optional[DatabaseSessionManager] = None


def get_database_manager() -> DatabaseSessionManager:
    """Get or create the global database session manager."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseSessionManager()
    return _db_manager


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Get a transactional session scope."""
    with get_database_manager().session_scope() as session:
        yield session
