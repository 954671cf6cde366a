"""
Monitoring & Alert Repositories.

============================================================
PURPOSE
============================================================
Repositories for health snapshots, alerts and notification
channels.

============================================================
DATA LIFECYCLE
============================================================
- Snapshots: APPEND-ONLY, read most-recent-first
- Alerts: keyed by (rule, instance_id), at most one non-resolved
- Notification channels: delivery counters updated in place

============================================================
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import desc, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storage.models.enums import AlertStatus
from storage.models.monitoring import HealthAlert, HealthSnapshot, NotificationChannel
from storage.repositories.base import BaseRepository


class HealthSnapshotRepository(BaseRepository[HealthSnapshot]):
    """Append-only health snapshots."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, HealthSnapshot, "HealthSnapshotRepository")

    def latest_for_instance(self, instance_id: str) -> Optional[HealthSnapshot]:
        stmt = (
            select(HealthSnapshot)
            .where(HealthSnapshot.instance_id == instance_id)
            .order_by(desc(HealthSnapshot.captured_at))
            .limit(1)
        )
        return self._execute_scalar(stmt)

    def latest_for_instances(self, instance_ids: Sequence[str]) -> Dict[str, HealthSnapshot]:
        """Single latest snapshot per instance."""
        if not instance_ids:
            return {}

        latest = (
            select(
                HealthSnapshot.instance_id.label("instance_id"),
                func.max(HealthSnapshot.captured_at).label("captured_at"),
            )
            .where(HealthSnapshot.instance_id.in_(list(instance_ids)))
            .group_by(HealthSnapshot.instance_id)
            .subquery()
        )
        stmt = select(HealthSnapshot).join(
            latest,
            (HealthSnapshot.instance_id == latest.c.instance_id)
            & (HealthSnapshot.captured_at == latest.c.captured_at),
        )

        result: Dict[str, HealthSnapshot] = {}
        for snapshot in self._execute_query(stmt):
            # Equal timestamps: keep the first row seen
            result.setdefault(snapshot.instance_id, snapshot)
        return result

    def history(
        self,
        instance_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[HealthSnapshot]:
        """Snapshots in [start, end], ascending by capture time."""
        stmt = select(HealthSnapshot).where(HealthSnapshot.instance_id == instance_id)
        if start is not None:
            stmt = stmt.where(HealthSnapshot.captured_at >= start)
        if end is not None:
            stmt = stmt.where(HealthSnapshot.captured_at <= end)
        return self._execute_query(stmt.order_by(HealthSnapshot.captured_at))


@dataclass
class AlertFilter:
    """Filter and pagination for alert listings."""
    instance_id: Optional[str] = None
    fleet_id: Optional[str] = None
    severity: Optional[str] = None
    status: Optional[str] = None
    rule: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    page: int = 1
    limit: int = 50


class HealthAlertRepository(BaseRepository[HealthAlert]):
    """Alert rows. Key-level atomicity is the alert store's concern."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, HealthAlert, "HealthAlertRepository")

    def find_by_key(
        self,
        rule: str,
        instance_id: Optional[str],
        statuses: Iterable[str],
    ) -> Optional[HealthAlert]:
        stmt = select(HealthAlert).where(
            HealthAlert.rule == rule,
            HealthAlert.status.in_(list(statuses)),
        )
        if instance_id is None:
            stmt = stmt.where(HealthAlert.instance_id.is_(None))
        else:
            stmt = stmt.where(HealthAlert.instance_id == instance_id)
        return self._execute_scalar(stmt.order_by(desc(HealthAlert.last_triggered_at)))

    def create(self, alert: HealthAlert) -> HealthAlert:
        """
        Insert a new alert.

        Raises:
            DuplicateRecordError: A non-resolved alert already holds the key
        """
        return self._add(
            alert,
            {"key": "rule,instance_id", "value": f"{alert.rule}:{alert.instance_id}"},
        )

    def find_open(self, rule: str, instance_id: Optional[str]) -> Optional[HealthAlert]:
        """The non-resolved alert for a key, if any."""
        open_statuses = [s.value for s in AlertStatus if s is not AlertStatus.RESOLVED]
        return self.find_by_key(rule, instance_id, open_statuses)

    def list_filtered(self, alert_filter: AlertFilter) -> Tuple[List[HealthAlert], int]:
        criteria = []
        if alert_filter.instance_id:
            criteria.append(HealthAlert.instance_id == alert_filter.instance_id)
        if alert_filter.fleet_id:
            criteria.append(HealthAlert.fleet_id == alert_filter.fleet_id)
        if alert_filter.severity:
            criteria.append(HealthAlert.severity == alert_filter.severity)
        if alert_filter.status:
            criteria.append(HealthAlert.status == alert_filter.status)
        if alert_filter.rule:
            criteria.append(HealthAlert.rule == alert_filter.rule)
        if alert_filter.start:
            criteria.append(HealthAlert.first_triggered_at >= alert_filter.start)
        if alert_filter.end:
            criteria.append(HealthAlert.first_triggered_at <= alert_filter.end)

        page = max(alert_filter.page, 1)
        limit = max(alert_filter.limit, 1)

        stmt = (
            select(HealthAlert)
            .where(*criteria)
            .order_by(desc(HealthAlert.last_triggered_at))
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return self._execute_query(stmt), self._count(*criteria)

    def count_by_status(self, status: str) -> int:
        return self._count(HealthAlert.status == status)

    def count_open(self) -> int:
        return self._count(HealthAlert.status != AlertStatus.RESOLVED.value)

    def open_counts_by_severity(self) -> Dict[str, int]:
        stmt = (
            select(HealthAlert.severity, func.count(HealthAlert.id))
            .where(HealthAlert.status != AlertStatus.RESOLVED.value)
            .group_by(HealthAlert.severity)
        )
        return {severity: count for severity, count in self._execute_rows(stmt)}

    def counts_by_status(self) -> Dict[str, int]:
        stmt = select(HealthAlert.status, func.count(HealthAlert.id)).group_by(HealthAlert.status)
        return {status: count for status, count in self._execute_rows(stmt)}


class NotificationChannelRepository(BaseRepository[NotificationChannel]):

    def __init__(self, session: Session) -> None:
        super().__init__(session, NotificationChannel, "NotificationChannelRepository")

    def list_active(self) -> List[NotificationChannel]:
        stmt = (
            select(NotificationChannel)
            .where(NotificationChannel.is_active.is_(True))
            .order_by(NotificationChannel.name)
        )
        return self._execute_query(stmt)

    def record_delivery(self, channel_id: str, delivered_at: datetime) -> None:
        self._update(
            channel_id,
            "record_delivery",
            last_delivery_at=delivered_at,
            delivery_count=NotificationChannel.delivery_count + 1,
        )

    def record_failure(self, channel_id: str, error_message: str) -> None:
        self._update(
            channel_id,
            "record_failure",
            last_error=error_message[:1000],
            failure_count=NotificationChannel.failure_count + 1,
        )

    def _update(self, channel_id: str, operation: str, **values) -> None:
        try:
            self._session.execute(
                update(NotificationChannel)
                .where(NotificationChannel.id == channel_id)
                .values(**values)
                .execution_options(synchronize_session="fetch")
            )
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation, {"channel_id": channel_id})
            raise
