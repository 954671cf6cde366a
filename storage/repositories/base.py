"""
Base Repository Class.

============================================================
PURPOSE
============================================================
Provides common functionality for all repositories including:
- Error wrapping (SQLAlchemy errors never leak past a repository)
- Common query operations
- Logging setup

============================================================
USAGE
============================================================
All domain repositories inherit from BaseRepository.
The session is injected via the constructor; repositories flush
but never commit. The caller owns the transaction.

============================================================
"""

import logging
from abc import ABC
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import (
    IntegrityError as SQLAlchemyIntegrityError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.orm import Session

from storage.models.base import Base
from storage.repositories.exceptions import (
    DatabaseUnavailableError,
    DuplicateRecordError,
    IntegrityError,
    QueryError,
    RecordNotFoundError,
)


# Type variable for ORM model
T = TypeVar("T", bound=Base)


class BaseRepository(ABC, Generic[T]):
    """
    Abstract base class for all repositories.

    Usage:
        class InstanceRepository(BaseRepository[BotInstance]):
            def __init__(self, session: Session):
                super().__init__(session, BotInstance, "InstanceRepository")
    """

    def __init__(
        self,
        session: Session,
        model_class: Type[T],
        repository_name: str
    ) -> None:
        self._session = session
        self._model_class = model_class
        self._repository_name = repository_name
        self._logger = logging.getLogger(f"repository.{repository_name}")

    @property
    def session(self) -> Session:
        return self._session

    @property
    def repository_name(self) -> str:
        return self._repository_name

    # =========================================================
    # PUBLIC COMMON OPERATIONS
    # =========================================================

    def get(self, record_id: str) -> Optional[T]:
        """Get an entity by primary key, or None."""
        return self._get_by_id(record_id)

    def get_or_raise(self, record_id: str) -> T:
        """Get an entity by primary key, raising RecordNotFoundError."""
        return self._get_by_id_or_raise(record_id)

    def add(self, entity: T) -> T:
        """Add and flush an entity."""
        return self._add(entity)

    def count(self) -> int:
        return self._count()

    def flush(self, operation: str = "flush") -> None:
        """Flush pending changes, wrapping database errors."""
        self._flush(operation)

    # =========================================================
    # PROTECTED HELPER METHODS
    # =========================================================

    def _handle_db_error(
        self,
        error: Exception,
        operation: str,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Wrap a database error in a repository exception.

        Raises:
            RepositoryException: Always
        """
        context = context or {}
        self._logger.error(
            f"Database error in {operation}: {error}",
            extra={"context": context},
        )

        name = self._repository_name

        if isinstance(error, OperationalError):
            raise DatabaseUnavailableError(name, operation, str(error)) from error

        if isinstance(error, SQLAlchemyIntegrityError):
            if "unique" in str(error).lower():
                raise DuplicateRecordError(
                    name,
                    constraint_field=context.get("key", "unknown"),
                    value=context.get("value", "unknown"),
                ) from error
            raise IntegrityError(name, operation, str(error)) from error

        raise QueryError(name, operation, str(error)) from error

    def _add(self, entity: T, context: Optional[Dict[str, Any]] = None) -> T:
        try:
            self._session.add(entity)
            self._session.flush()
            self._logger.debug(f"Added entity: {entity!r}")
            return entity
        except SQLAlchemyError as e:
            self._session.rollback()
            self._handle_db_error(e, "add", context or {"entity": repr(entity)})
            raise  # Never reached, but satisfies type checker

    def _flush(self, operation: str) -> None:
        try:
            self._session.flush()
        except SQLAlchemyError as e:
            self._session.rollback()
            self._handle_db_error(e, operation)
            raise

    def _get_by_id(self, record_id: str) -> Optional[T]:
        try:
            return self._session.get(self._model_class, record_id)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "get_by_id", {"id": record_id})
            raise

    def _get_by_id_or_raise(self, record_id: str, id_field: str = "id") -> T:
        entity = self._get_by_id(record_id)
        if entity is None:
            raise RecordNotFoundError(
                repository_name=self._repository_name,
                record_id=record_id,
                id_field=id_field
            )
        return entity

    def _count(self, *criteria: Any) -> int:
        try:
            stmt = select(func.count()).select_from(self._model_class)
            if criteria:
                stmt = stmt.where(*criteria)
            return self._session.execute(stmt).scalar() or 0
        except SQLAlchemyError as e:
            self._handle_db_error(e, "count")
            raise

    def _execute_query(self, stmt: Any) -> List[T]:
        try:
            result = self._session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self._handle_db_error(e, "query")
            raise

    def _execute_scalar(self, stmt: Any) -> Any:
        """Execute a statement and return its single scalar (entity or value)."""
        try:
            result = self._session.execute(stmt)
            return result.scalars().first()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "query_scalar")
            raise

    def _execute_rows(self, stmt: Any) -> List[Any]:
        """Execute a statement returning plain rows (aggregates)."""
        try:
            return list(self._session.execute(stmt).all())
        except SQLAlchemyError as e:
            self._handle_db_error(e, "query_rows")
            raise
