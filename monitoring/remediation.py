"""
Remediation Dispatcher.

============================================================
PURPOSE
============================================================
Executes the remediation action recorded on an alert against the
alert's instance.

============================================================
ACTIONS
============================================================
- restart / reconcile: delegated to the configured Reconciler
- re-pair-channel: reset EXPIRED/ERROR channel auth sessions to
  PENDING
- run-doctor: live deep health check, succeeds iff reachable
- review_costs: needs a human; always a failure result

The outcome is written to the alert as ``remediation_note`` and
the alert is resolved only on success. This dispatcher never
raises; every failure becomes a RemediationResult.

============================================================
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from monitoring.alerts.store import AlertStore
from monitoring.health_poller import HealthPoller
from monitoring.models import RemediationResult
from storage.database import Database
from storage.models.enums import RemediationAction
from storage.repositories.instances import ChannelAuthRepository


logger = logging.getLogger(__name__)


# ============================================================
# RECONCILER INTERFACE
# ============================================================

@dataclass
class ReconcileResult:
    success: bool
    message: str
    changes: List[str] = field(default_factory=list)


class Reconciler(ABC):
    """Brings an instance back to its desired deployment state."""

    @abstractmethod
    async def reconcile(self, instance_id: str) -> ReconcileResult:
        pass


# ============================================================
# DISPATCHER
# ============================================================

class RemediationDispatcher:

    def __init__(
        self,
        database: Database,
        store: AlertStore,
        poller: HealthPoller,
        reconciler: Optional[Reconciler] = None,
    ) -> None:
        self._db = database
        self._store = store
        self._poller = poller
        self._reconciler = reconciler

    async def execute_remediation(self, alert_id: str) -> RemediationResult:
        """Run the alert's remediation action and record the outcome."""
        try:
            alert = await self._db.run_in_thread(self._store.get_alert, alert_id)
        except Exception as e:
            logger.error(f"Failed to load alert {alert_id} for remediation: {e}")
            return RemediationResult(success=False, action="none", message=f"Failed to load alert: {e}")

        if alert is None:
            return RemediationResult(success=False, action="none", message=f"Alert {alert_id} not found")

        if not alert.remediation_action:
            return RemediationResult(
                success=False,
                action="none",
                message="No remediation action defined for this alert",
            )

        action = alert.remediation_action
        instance_id = alert.instance_id
        if not instance_id:
            return RemediationResult(
                success=False,
                action=action,
                message="Cannot execute remediation: alert is not associated with a specific instance",
            )

        logger.info(f'Executing remediation "{action}" for alert {alert_id} (instance {instance_id})')
        result = await self._dispatch(action, instance_id)

        note = f"{'Success' if result.success else 'Failed'}: {result.message}"
        try:
            await self._db.run_in_thread(self._store.record_remediation, alert_id, note, resolve=result.success)
        except Exception as e:
            logger.error(f"Failed to record remediation outcome on alert {alert_id}: {e}")

        return result

    async def _dispatch(self, action: str, instance_id: str) -> RemediationResult:
        if action == RemediationAction.RESTART.value:
            return await self._execute_reconcile(instance_id, RemediationAction.RESTART, "Restart")
        if action == RemediationAction.RECONCILE.value:
            return await self._execute_reconcile(instance_id, RemediationAction.RECONCILE, "Reconcile")
        if action == RemediationAction.RE_PAIR_CHANNEL.value:
            return await self._db.run_in_thread(self._execute_re_pair_channel, instance_id)
        if action == RemediationAction.RUN_DOCTOR.value:
            return await self._execute_run_doctor(instance_id)
        if action == RemediationAction.REVIEW_COSTS.value:
            return RemediationResult(
                success=False,
                action=action,
                message="Cost review requires manual review; no automated action available",
            )
        return RemediationResult(success=False, action=action, message=f"Unknown remediation action: {action}")

    # --------------------------------------------------------
    # ACTIONS
    # --------------------------------------------------------

    async def _execute_reconcile(
        self,
        instance_id: str,
        action: RemediationAction,
        label: str,
    ) -> RemediationResult:
        if self._reconciler is None:
            return RemediationResult(
                success=False,
                action=action.value,
                message=f"{label} failed: no reconciler configured",
            )
        try:
            outcome = await self._reconciler.reconcile(instance_id)
        except Exception as e:
            logger.error(f"{label} remediation failed for {instance_id}: {e}")
            return RemediationResult(success=False, action=action.value, message=f"{label} failed: {e}")

        return RemediationResult(
            success=outcome.success,
            action=action.value,
            message=outcome.message,
            detail="; ".join(outcome.changes),
        )

    def _execute_re_pair_channel(self, instance_id: str) -> RemediationResult:
        action = RemediationAction.RE_PAIR_CHANNEL.value
        try:
            with self._db.transaction_scope() as session:
                count = ChannelAuthRepository(session).reset_failed_to_pending(instance_id)
        except Exception as e:
            logger.error(f"Re-pair channel remediation failed for {instance_id}: {e}")
            return RemediationResult(success=False, action=action, message=f"Re-pair failed: {e}")

        return RemediationResult(
            success=True,
            action=action,
            message=f"Reset {count} channel auth session(s) to PENDING",
            detail=f"Instance {instance_id}: {count} sessions reset",
        )

    async def _execute_run_doctor(self, instance_id: str) -> RemediationResult:
        action = RemediationAction.RUN_DOCTOR.value
        try:
            deep = await self._poller.get_deep_health(instance_id)
        except Exception as e:
            logger.error(f"Run-doctor remediation failed for {instance_id}: {e}")
            return RemediationResult(success=False, action=action, message=f"Doctor check failed: {e}")

        if deep.reachable:
            message = f"Deep health check completed. Gateway healthy: {str(deep.snapshot.ok).lower()}"
        else:
            message = "Deep health check failed: gateway unreachable"

        return RemediationResult(
            success=deep.reachable,
            action=action,
            message=message,
            detail=json.dumps(
                {
                    "reachable": deep.reachable,
                    "healthy": deep.snapshot.ok,
                    "latencyMs": deep.latency_ms,
                    "channels": len(deep.snapshot.channels),
                }
            ),
        )


__all__ = [
    "ReconcileResult",
    "Reconciler",
    "RemediationDispatcher",
]
