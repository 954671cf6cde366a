"""
Storage - Database.

============================================================
RESPONSIBILITY
============================================================
Manages database connections and sessions.

- Owns the SQLAlchemy engine and session factory
- Provides session and transaction context managers
- Creates the schema on demand
- Hands blocking work to worker threads for async callers

============================================================
DESIGN PRINCIPLES
============================================================
- One Database object per process, passed to services explicitly
- Explicit transaction boundaries
- Hard failures on persistence errors

============================================================
"""

import asyncio
import logging
import os
import threading
from contextlib import contextmanager, nullcontext
from typing import Any, Callable, ContextManager, Dict, Generator, Optional, TypeVar

from dotenv import load_dotenv
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from storage.models import Base


# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


DEFAULT_DATABASE_URL = "sqlite:///bot_fleet_monitor.db"

MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")

T = TypeVar("T")


def get_database_url() -> str:
    """Get database URL from environment."""
    url = os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql+asyncpg"):
        # Convert async URL to sync
        url = url.replace("postgresql+asyncpg", "postgresql")

    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")

    return url


# =============================================================
# CUSTOM EXCEPTIONS
# =============================================================


class DatabasePersistenceError(Exception):
    """Raised when database persistence fails."""
    pass


class DatabaseConnectionError(DatabasePersistenceError):
    """Raised when database connection fails."""
    pass


class DatabaseInitializationError(DatabasePersistenceError):
    """Raised when database initialization fails."""
    pass


# =============================================================
# DATABASE
# =============================================================


class Database:
    """
    Engine plus session factory.

    Usage:
        db = Database("sqlite:///fleet.db")
        db.init_schema()
        with db.transaction_scope() as session:
            session.add(record)
    """

    def __init__(self, url: Optional[str] = None, echo: bool = False) -> None:
        self._url = url or get_database_url()
        self._engine = self._create_engine(self._url, echo)
        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )
        # The in-memory database is one shared connection; sessions
        # opened from worker threads must take turns on it.
        self._memory_lock: Optional[threading.RLock] = (
            threading.RLock() if self._url in MEMORY_URLS else None
        )

    @staticmethod
    def _create_engine(url: str, echo: bool) -> Engine:
        kwargs: Dict[str, Any] = {"echo": echo, "future": True}

        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in MEMORY_URLS:
                # Share the single in-memory database across sessions
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True
            kwargs["pool_recycle"] = 1800

        engine = create_engine(url, **kwargs)
        logger.info(f"Created database engine for: {url.split('@')[-1]}")

        @event.listens_for(engine, "connect")
        def on_connect(dbapi_conn, connection_record):
            logger.debug("Database connection established")

        return engine

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def url(self) -> str:
        return self._url

    def _exclusive(self) -> ContextManager[Any]:
        if self._memory_lock is None:
            return nullcontext()
        return self._memory_lock

    async def run_in_thread(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run blocking database work on a worker thread.

        Coroutines call this instead of opening a session directly so
        a slow query never stalls the event loop.
        """
        return await asyncio.to_thread(func, *args, **kwargs)

    def get_session(self) -> Session:
        """
        Get a new database session.

        IMPORTANT: Caller is responsible for committing/closing.
        Prefer using session_scope() instead.
        """
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions with automatic cleanup.

        The caller commits. On exception the session is rolled back
        and the exception re-raised.
        """
        with self._exclusive():
            session = self.get_session()
            try:
                yield session
            except SQLAlchemyError as e:
                logger.error(f"Database error, rolling back: {e}")
                session.rollback()
                raise
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    @contextmanager
    def transaction_scope(self) -> Generator[Session, None, None]:
        """
        Context manager for explicit transaction boundaries.

        Commits only if no exception occurs. Rolls back on ANY
        exception; SQLAlchemy errors are wrapped in
        DatabasePersistenceError, everything else propagates unchanged.
        """
        with self._exclusive():
            session = self.get_session()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Database transaction failed, rolling back: {e}")
                session.rollback()
                raise DatabasePersistenceError(f"Transaction failed: {e}") from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def verify_connection(self) -> bool:
        """
        Verify database connection is working.

        Raises:
            DatabaseConnectionError if connection fails
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            return True
        except OperationalError as e:
            logger.error(f"Database connection failed: {e}")
            raise DatabaseConnectionError(f"Cannot connect to database: {e}") from e

    def init_schema(self) -> None:
        """
        Create all tables defined in ORM models.

        Raises:
            DatabaseInitializationError if table creation fails
        """
        try:
            Base.metadata.create_all(bind=self._engine)
            logger.info("Database tables created successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database tables: {e}")
            raise DatabaseInitializationError(f"Table creation failed: {e}") from e

    def dispose(self) -> None:
        self._engine.dispose()


__all__ = [
    "Database",
    "get_database_url",
    "DEFAULT_DATABASE_URL",
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
]
