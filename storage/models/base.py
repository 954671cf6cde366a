"""
Base ORM Model and Mixins.

============================================================
PURPOSE
============================================================
Provides the declarative base and common mixins used by all
ORM models in the fleet monitor.

============================================================
COMPONENTS
============================================================
- Base: SQLAlchemy declarative base for all models
- TimestampMixin: Common timestamp columns
- new_id: Primary key generator (UUID4 string)

============================================================
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def new_id() -> str:
    """Generate a primary key value."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC now, the storage convention for every timestamp column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """
    Declarative base for all ORM models.

    All timestamps are stored as naive UTC so that comparisons
    behave the same on SQLite and PostgreSQL.
    """

    type_annotation_map = {
        datetime: DateTime(),
    }


class TimestampMixin:
    """
    Mixin providing standard timestamp columns.

    Usage:
        class MyModel(Base, TimestampMixin):
            __tablename__ = "my_table"
            ...
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(),
        nullable=False,
        default=utcnow,
        comment="Record creation timestamp (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        comment="Last update timestamp (UTC)"
    )
