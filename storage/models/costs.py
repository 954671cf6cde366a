"""
Cost Domain ORM Models.

============================================================
PURPOSE
============================================================
Budget configuration and the append-only cost event stream that
feed the budget and token-spike alert rules.

============================================================
MODELS
============================================================
- BudgetConfig: Monthly spend limit scoped to an instance or fleet
- CostEvent: One token/cost usage record

============================================================
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base, TimestampMixin, new_id, utcnow


class BudgetConfig(Base, TimestampMixin):
    """
    Monthly budget.

    Scoped to exactly one of instance_id or fleet_id. Several budgets
    may apply to the same instance (direct plus fleet-wide).
    """

    __tablename__ = "budget_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    instance_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("bot_instances.id", ondelete="CASCADE"),
        nullable=True,
    )

    fleet_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("fleets.id", ondelete="CASCADE"),
        nullable=True,
    )

    monthly_limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    warn_threshold_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=75)

    critical_threshold_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=90)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_budget_instance", "instance_id"),
        Index("idx_budget_fleet", "fleet_id"),
    )


class CostEvent(Base):
    """Append-only usage record."""

    __tablename__ = "cost_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    instance_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bot_instances.id", ondelete="CASCADE"),
        nullable=False,
    )

    provider: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    model: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)

    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    cost_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("idx_cost_events_instance_time", "instance_id", "occurred_at"),
    )
