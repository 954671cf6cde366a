"""
Alert Store.

============================================================
PURPOSE
============================================================
Persisted, queryable alert records keyed by (rule, instance_id).

============================================================
UPSERT SEMANTICS
============================================================
- No non-resolved alert for the key: create ACTIVE, hits=1
- A non-resolved alert exists: update it in place, hits+1, and
  re-activate it if it was ACKNOWLEDGED or SUPPRESSED
- Only RESOLVED alerts exist: create a fresh record

Upsert and resolve are atomic per key: an in-process lock per key
serializes callers, and the partial unique index on open keys
rejects a concurrent create from another process. A create that
loses that race is retried once as an update.

============================================================
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Generator, Optional, Tuple

from core.clock import ClockFactory, ClockProtocol
from core.exceptions import AlertNotFoundError
from monitoring.models import AlertPayload, AlertSummary
from storage.database import Database
from storage.models.enums import AlertSeverity, AlertStatus
from storage.models.monitoring import HealthAlert
from storage.repositories.exceptions import DuplicateRecordError, TransactionError
from storage.repositories.monitoring import AlertFilter, HealthAlertRepository


logger = logging.getLogger(__name__)


RESOLVABLE_STATUSES = (AlertStatus.ACTIVE.value, AlertStatus.ACKNOWLEDGED.value)
REACTIVATED_STATUSES = (AlertStatus.ACKNOWLEDGED.value, AlertStatus.SUPPRESSED.value)


@dataclass
class UpsertResult:
    alert: HealthAlert
    created: bool = False
    reactivated: bool = False
    escalated: bool = False

    @property
    def should_notify(self) -> bool:
        """New, re-activated, or more severe than before."""
        return self.created or self.reactivated or self.escalated


def _severity_rank(value: str) -> int:
    try:
        return AlertSeverity(value).rank
    except ValueError:
        return -1


class AlertStore:
    """
    Alert persistence with per-key atomic upsert and resolve.

    Every public method runs in its own transaction.
    """

    def __init__(self, database: Database, clock: Optional[ClockProtocol] = None) -> None:
        self._db = database
        self._clock = clock or ClockFactory.get_clock()
        self._locks: Dict[Tuple[str, Optional[str]], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _key_lock(self, rule: str, instance_id: Optional[str]) -> Generator[None, None, None]:
        with self._locks_guard:
            lock = self._locks.setdefault((rule, instance_id), threading.Lock())
        with lock:
            yield

    # --------------------------------------------------------
    # RULE-FACING OPERATIONS
    # --------------------------------------------------------

    def upsert_alert(self, payload: AlertPayload) -> UpsertResult:
        """
        Create or refresh the open alert for the payload's key.

        Raises:
            TransactionError: The key was contended twice in a row
        """
        rule = payload.rule.value
        with self._key_lock(rule, payload.instance_id):
            try:
                return self._upsert_once(payload)
            except DuplicateRecordError:
                logger.warning(f"Concurrent create for {rule}:{payload.instance_id}, retrying as update")
            try:
                return self._upsert_once(payload)
            except DuplicateRecordError as e:
                raise TransactionError(
                    repository_name="AlertStore",
                    operation="upsert_alert",
                    phase="retry",
                    original_error=str(e),
                ) from e

    def _upsert_once(self, payload: AlertPayload) -> UpsertResult:
        now = self._clock.now()
        rule = payload.rule.value
        remediation = payload.remediation_action.value if payload.remediation_action else None

        with self._db.transaction_scope() as session:
            repo = HealthAlertRepository(session)
            existing = repo.find_open(rule, payload.instance_id)

            if existing is None:
                alert = repo.create(
                    HealthAlert(
                        rule=rule,
                        instance_id=payload.instance_id,
                        fleet_id=payload.fleet_id,
                        severity=payload.severity.value,
                        status=AlertStatus.ACTIVE.value,
                        title=payload.title,
                        message=payload.message,
                        detail=payload.detail,
                        remediation_action=remediation,
                        first_triggered_at=now,
                        last_triggered_at=now,
                        consecutive_hits=1,
                    )
                )
                logger.info(f"Alert created: {rule} for instance {payload.instance_id} ({payload.severity.value})")
                return UpsertResult(alert=alert, created=True)

            escalated = _severity_rank(payload.severity.value) > _severity_rank(existing.severity)
            reactivated = existing.status in REACTIVATED_STATUSES

            existing.severity = payload.severity.value
            existing.title = payload.title
            existing.message = payload.message
            existing.detail = payload.detail
            existing.remediation_action = remediation
            existing.fleet_id = payload.fleet_id
            existing.last_triggered_at = now
            existing.consecutive_hits += 1

            if reactivated:
                existing.status = AlertStatus.ACTIVE.value
                existing.acknowledged_at = None
                existing.acknowledged_by = None
                logger.info(f"Alert re-activated: {rule} for instance {payload.instance_id}")

            repo.flush("upsert_alert")
            return UpsertResult(alert=existing, reactivated=reactivated, escalated=escalated)

    def resolve_alert_by_key(self, rule: str, instance_id: Optional[str]) -> Optional[HealthAlert]:
        """Resolve the ACTIVE/ACKNOWLEDGED alert for a key. No-op if there is none."""
        with self._key_lock(rule, instance_id):
            with self._db.transaction_scope() as session:
                repo = HealthAlertRepository(session)
                alert = repo.find_by_key(rule, instance_id, RESOLVABLE_STATUSES)
                if alert is None:
                    return None

                alert.status = AlertStatus.RESOLVED.value
                alert.resolved_at = self._clock.now()
                repo.flush("resolve_alert_by_key")
                logger.info(f"Alert resolved: {rule} for instance {instance_id}")
                return alert

    # --------------------------------------------------------
    # OPERATOR-FACING OPERATIONS
    # --------------------------------------------------------

    def list_alerts(self, alert_filter: Optional[AlertFilter] = None) -> Dict[str, Any]:
        """Filtered page of alerts, most recently triggered first."""
        alert_filter = alert_filter or AlertFilter()
        with self._db.session_scope() as session:
            items, total = HealthAlertRepository(session).list_filtered(alert_filter)
        return {
            "data": items,
            "total": total,
            "page": max(alert_filter.page, 1),
            "limit": max(alert_filter.limit, 1),
        }

    def get_alert(self, alert_id: str) -> Optional[HealthAlert]:
        with self._db.session_scope() as session:
            return HealthAlertRepository(session).get(alert_id)

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str = "system") -> HealthAlert:
        """
        Mark an alert ACKNOWLEDGED.

        Raises:
            AlertNotFoundError: Unknown alert id
        """
        return self._transition(
            alert_id,
            AlertStatus.ACKNOWLEDGED,
            acknowledged_at=self._clock.now(),
            acknowledged_by=acknowledged_by,
        )

    def resolve_alert(self, alert_id: str) -> HealthAlert:
        return self._transition(alert_id, AlertStatus.RESOLVED, resolved_at=self._clock.now())

    def suppress_alert(self, alert_id: str) -> HealthAlert:
        return self._transition(alert_id, AlertStatus.SUPPRESSED)

    def record_remediation(self, alert_id: str, note: str, resolve: bool) -> HealthAlert:
        """Store the remediation outcome, resolving the alert on success."""
        with self._db.transaction_scope() as session:
            repo = HealthAlertRepository(session)
            alert = repo.get(alert_id)
            if alert is None:
                raise AlertNotFoundError(alert_id)

            alert.remediation_note = note
            if resolve:
                alert.status = AlertStatus.RESOLVED.value
                alert.resolved_at = self._clock.now()
            repo.flush("record_remediation")
            return alert

    def _transition(self, alert_id: str, status: AlertStatus, **fields: Any) -> HealthAlert:
        with self._db.transaction_scope() as session:
            repo = HealthAlertRepository(session)
            alert = repo.get(alert_id)
            if alert is None:
                raise AlertNotFoundError(alert_id)

            alert.status = status.value
            for key, value in fields.items():
                setattr(alert, key, value)
            repo.flush(f"transition_{status.value.lower()}")
            logger.info(f"Alert {alert_id} -> {status.value}")
            return alert

    # --------------------------------------------------------
    # COUNTS
    # --------------------------------------------------------

    def get_alert_summary(self) -> AlertSummary:
        with self._db.session_scope() as session:
            repo = HealthAlertRepository(session)
            return AlertSummary(
                by_severity=repo.open_counts_by_severity(),
                by_status=repo.counts_by_status(),
                total=repo.count_open(),
            )

    def get_active_alert_count(self) -> int:
        with self._db.session_scope() as session:
            return HealthAlertRepository(session).count_by_status(AlertStatus.ACTIVE.value)


__all__ = [
    "AlertStore",
    "UpsertResult",
]
