"""
Cost Repositories.

Budget configuration lookup and cost-event aggregation used by the
budget and token-spike rules. Aggregation happens in SQL; the
evaluators only see sums and counts.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from storage.models.costs import BudgetConfig, CostEvent
from storage.repositories.base import BaseRepository


@dataclass(frozen=True)
class TokenWindow:
    """Token usage in one time window."""
    event_count: int
    total_tokens: int


class BudgetConfigRepository(BaseRepository[BudgetConfig]):

    def __init__(self, session: Session) -> None:
        super().__init__(session, BudgetConfig, "BudgetConfigRepository")

    def active_for_instance(self, instance_id: str, fleet_id: Optional[str]) -> List[BudgetConfig]:
        """Active budgets scoped to the instance directly or to its fleet."""
        scopes = [BudgetConfig.instance_id == instance_id]
        if fleet_id:
            scopes.append(BudgetConfig.fleet_id == fleet_id)

        stmt = (
            select(BudgetConfig)
            .where(BudgetConfig.is_active.is_(True), or_(*scopes))
            .order_by(BudgetConfig.id)
        )
        return self._execute_query(stmt)


class CostEventRepository(BaseRepository[CostEvent]):

    def __init__(self, session: Session) -> None:
        super().__init__(session, CostEvent, "CostEventRepository")

    def spend_since(self, instance_id: str, since: datetime, until: datetime) -> int:
        """Sum of cost_cents in [since, until]."""
        stmt = select(func.coalesce(func.sum(CostEvent.cost_cents), 0)).where(
            CostEvent.instance_id == instance_id,
            CostEvent.occurred_at >= since,
            CostEvent.occurred_at <= until,
        )
        return int(self._execute_scalar(stmt) or 0)

    def token_window(
        self,
        instance_id: str,
        start: datetime,
        end: datetime,
        include_end: bool,
    ) -> TokenWindow:
        """Event count and input+output tokens in [start, end] or [start, end)."""
        upper = CostEvent.occurred_at <= end if include_end else CostEvent.occurred_at < end
        stmt = select(
            func.count(CostEvent.id),
            func.coalesce(func.sum(CostEvent.input_tokens + CostEvent.output_tokens), 0),
        ).where(
            CostEvent.instance_id == instance_id,
            CostEvent.occurred_at >= start,
            upper,
        )
        rows = self._execute_rows(stmt)
        count, tokens = rows[0] if rows else (0, 0)
        return TokenWindow(event_count=int(count or 0), total_tokens=int(tokens or 0))
