"""
Repository Layer Exceptions.

============================================================
PURPOSE
============================================================
SQLAlchemy errors never leave a repository; BaseRepository
wraps them into this family so services can branch on the
kind of failure without importing SQLAlchemy.

- RecordNotFoundError: expected row missing (get_or_raise)
- DuplicateRecordError: unique index hit, e.g. two writers
  creating the open alert for the same (rule, instance)
- IntegrityError: any other constraint violation
- DatabaseUnavailableError: the database could not be reached
- QueryError: everything else
- TransactionError: a multi-step write could not complete

============================================================
"""

from typing import Any, Dict, Optional


class RepositoryException(Exception):
    """Base for every repository failure."""

    def __init__(
        self,
        message: str,
        repository_name: str,
        operation: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        self.message = message
        self.repository_name = repository_name
        self.operation = operation
        self.details = details or {}
        super().__init__(f"[{repository_name}] {operation}: {message}")


class RecordNotFoundError(RepositoryException):

    def __init__(self, repository_name: str, record_id: Any, id_field: str = "id") -> None:
        super().__init__(
            f"No row with {id_field}={record_id}",
            repository_name,
            "get",
            {id_field: str(record_id)},
        )
        self.record_id = record_id
        self.id_field = id_field


class DuplicateRecordError(RepositoryException):

    def __init__(self, repository_name: str, constraint_field: str, value: Any) -> None:
        super().__init__(
            f"{constraint_field}={value} is already taken",
            repository_name,
            "create",
            {"field": constraint_field, "value": str(value)},
        )
        self.constraint_field = constraint_field
        self.value = value


class IntegrityError(RepositoryException):

    def __init__(self, repository_name: str, operation: str, message: str) -> None:
        super().__init__(f"Constraint violated: {message}", repository_name, operation)


class DatabaseUnavailableError(RepositoryException):

    def __init__(self, repository_name: str, operation: str, original_error: str) -> None:
        super().__init__(
            f"Database unavailable: {original_error}",
            repository_name,
            operation,
            {"original_error": original_error},
        )


class QueryError(RepositoryException):

    def __init__(self, repository_name: str, operation: str, original_error: str) -> None:
        super().__init__(
            f"Query failed: {original_error}",
            repository_name,
            operation,
            {"original_error": original_error},
        )


class TransactionError(RepositoryException):
    """A write that needed several steps (or a retry) gave up."""

    def __init__(self, repository_name: str, operation: str, phase: str, original_error: str) -> None:
        super().__init__(
            f"{phase} failed: {original_error}",
            repository_name,
            operation,
            {"phase": phase, "original_error": original_error},
        )
        self.phase = phase
