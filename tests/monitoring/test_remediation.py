"""
Tests for the remediation dispatcher.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from monitoring.alerts.store import AlertStore
from monitoring.health_poller import HealthPoller
from monitoring.remediation import ReconcileResult, RemediationDispatcher
from storage.models.enums import AlertRule, AlertSeverity, AlertStatus, ChannelAuthState
from storage.models.monitoring import HealthAlert


@pytest.fixture
def store(database, clock):
    return AlertStore(database, clock=clock)


@pytest.fixture
def poller(database, clock, client_factory):
    return HealthPoller(database, client_factory=client_factory, clock=clock)


def make_reconciler(**kwargs):
    reconciler = MagicMock()
    reconciler.reconcile = AsyncMock(**kwargs)
    return reconciler


def open_alert(seed, instance_id, action, rule=AlertRule.UNREACHABLE_INSTANCE):
    return seed.alert(
        rule=rule.value,
        instance_id=instance_id,
        severity=AlertSeverity.ERROR.value,
        status=AlertStatus.ACTIVE.value,
        remediation_action=action,
    )


# ============================================================
# RECONCILER-BACKED ACTIONS
# ============================================================

class TestRestartAndReconcile:

    @pytest.mark.asyncio
    async def test_restart_success_resolves_alert(self, seed, database, store, poller):
        instance_id = seed.instance("bot-1")
        alert_id = open_alert(seed, instance_id, "restart")
        reconciler = make_reconciler(
            return_value=ReconcileResult(
                success=True,
                message="Instance restarted",
                changes=["stopped container", "started container"],
            )
        )

        dispatcher = RemediationDispatcher(database, store, poller, reconciler=reconciler)
        result = await dispatcher.execute_remediation(alert_id)

        reconciler.reconcile.assert_awaited_once_with(instance_id)
        assert result.success is True
        assert result.action == "restart"
        assert result.message == "Instance restarted"
        assert result.detail == "stopped container; started container"

        alert = seed.get(HealthAlert, alert_id)
        assert alert.status == AlertStatus.RESOLVED.value
        assert alert.remediation_note == "Success: Instance restarted"

    @pytest.mark.asyncio
    async def test_reconcile_failure_keeps_alert_open(self, seed, database, store, poller):
        instance_id = seed.instance("bot-1")
        alert_id = open_alert(seed, instance_id, "reconcile", rule=AlertRule.CONFIG_DRIFT)
        reconciler = make_reconciler(return_value=ReconcileResult(success=False, message="Manifest invalid"))

        result = await RemediationDispatcher(database, store, poller, reconciler).execute_remediation(alert_id)

        assert result.success is False
        assert result.action == "reconcile"
        alert = seed.get(HealthAlert, alert_id)
        assert alert.status == AlertStatus.ACTIVE.value
        assert alert.remediation_note == "Failed: Manifest invalid"

    @pytest.mark.asyncio
    async def test_reconciler_exception_becomes_result(self, seed, database, store, poller):
        instance_id = seed.instance("bot-1")
        alert_id = open_alert(seed, instance_id, "restart")
        reconciler = make_reconciler(side_effect=RuntimeError("provider API down"))

        result = await RemediationDispatcher(database, store, poller, reconciler).execute_remediation(alert_id)

        assert result.success is False
        assert result.message == "Restart failed: provider API down"

    @pytest.mark.asyncio
    async def test_no_reconciler_configured(self, seed, database, store, poller):
        instance_id = seed.instance("bot-1")
        alert_id = open_alert(seed, instance_id, "restart")

        result = await RemediationDispatcher(database, store, poller).execute_remediation(alert_id)

        assert result.success is False
        assert result.message == "Restart failed: no reconciler configured"
        assert seed.get(HealthAlert, alert_id).remediation_note == "Failed: Restart failed: no reconciler configured"


# ============================================================
# BUILT-IN ACTIONS
# ============================================================

class TestRePairChannel:

    @pytest.mark.asyncio
    async def test_resets_failed_sessions_only(self, seed, database, store, poller):
        instance_id = seed.instance("bot-1")
        other_id = seed.instance("bot-2")
        seed.auth_session(instance_id, "whatsapp", ChannelAuthState.EXPIRED, attempt_count=3)
        seed.auth_session(instance_id, "discord", ChannelAuthState.ERROR, last_error="bad token")
        seed.auth_session(instance_id, "telegram", ChannelAuthState.PAIRED)
        seed.auth_session(other_id, "whatsapp", ChannelAuthState.EXPIRED)
        alert_id = open_alert(seed, instance_id, "re-pair-channel", rule=AlertRule.CHANNEL_AUTH_EXPIRED)

        result = await RemediationDispatcher(database, store, poller).execute_remediation(alert_id)

        assert result.success is True
        assert result.message == "Reset 2 channel auth session(s) to PENDING"
        assert result.detail == f"Instance {instance_id}: 2 sessions reset"

        states = {s.channel_type: s for s in seed.auth_sessions_of(instance_id)}
        assert states["whatsapp"].state == ChannelAuthState.PENDING.value
        assert states["whatsapp"].attempt_count == 0
        assert states["discord"].state == ChannelAuthState.PENDING.value
        assert states["discord"].last_error is None
        assert states["telegram"].state == ChannelAuthState.PAIRED.value
        assert seed.auth_sessions_of(other_id)[0].state == ChannelAuthState.EXPIRED.value
        assert seed.get(HealthAlert, alert_id).status == AlertStatus.RESOLVED.value

    @pytest.mark.asyncio
    async def test_nothing_to_reset_still_succeeds(self, seed, database, store, poller):
        instance_id = seed.instance("bot-1")
        alert_id = open_alert(seed, instance_id, "re-pair-channel", rule=AlertRule.CHANNEL_AUTH_EXPIRED)

        result = await RemediationDispatcher(database, store, poller).execute_remediation(alert_id)

        assert result.success is True
        assert result.message == "Reset 0 channel auth session(s) to PENDING"


class TestRunDoctor:

    @pytest.mark.asyncio
    async def test_reachable_gateway(self, seed, database, store, poller):
        instance_id = seed.instance("bot-1")
        alert_id = open_alert(seed, instance_id, "run-doctor", rule=AlertRule.DEGRADED_INSTANCE)

        result = await RemediationDispatcher(database, store, poller).execute_remediation(alert_id)

        assert result.success is True
        assert result.message == "Deep health check completed. Gateway healthy: true"
        detail = json.loads(result.detail)
        assert detail["reachable"] is True
        assert detail["healthy"] is True
        assert detail["channels"] == 2
        assert detail["latencyMs"] >= 0

    @pytest.mark.asyncio
    async def test_unreachable_gateway(self, seed, database, store, poller, client_factory):
        instance_id = seed.instance("bot-1")
        client_factory.set_behavior("bot-1", unreachable=True)
        alert_id = open_alert(seed, instance_id, "run-doctor", rule=AlertRule.DEGRADED_INSTANCE)

        result = await RemediationDispatcher(database, store, poller).execute_remediation(alert_id)

        assert result.success is False
        assert result.message == "Deep health check failed: gateway unreachable"
        assert json.loads(result.detail) == {"reachable": False, "healthy": False, "latencyMs": -1, "channels": 0}
        assert seed.get(HealthAlert, alert_id).status == AlertStatus.ACTIVE.value


# ============================================================
# NON-AUTOMATABLE & INVALID INPUT
# ============================================================

class TestFailureResults:

    @pytest.mark.asyncio
    async def test_review_costs_needs_a_human(self, seed, database, store, poller):
        instance_id = seed.instance("bot-1")
        alert_id = open_alert(seed, instance_id, "review_costs", rule=AlertRule.TOKEN_SPIKE)

        result = await RemediationDispatcher(database, store, poller).execute_remediation(alert_id)

        assert result.success is False
        assert result.action == "review_costs"
        assert "manual review" in result.message

    @pytest.mark.asyncio
    async def test_unknown_action(self, seed, database, store, poller):
        instance_id = seed.instance("bot-1")
        alert_id = open_alert(seed, instance_id, "reboot-the-world")

        result = await RemediationDispatcher(database, store, poller).execute_remediation(alert_id)

        assert result.success is False
        assert result.message == "Unknown remediation action: reboot-the-world"

    @pytest.mark.asyncio
    async def test_missing_alert(self, database, store, poller):
        result = await RemediationDispatcher(database, store, poller).execute_remediation("ghost")

        assert result.success is False
        assert result.action == "none"
        assert result.message == "Alert ghost not found"

    @pytest.mark.asyncio
    async def test_alert_without_action(self, seed, database, store, poller):
        instance_id = seed.instance("bot-1")
        alert_id = open_alert(seed, instance_id, None)

        result = await RemediationDispatcher(database, store, poller).execute_remediation(alert_id)

        assert result.success is False
        assert result.message == "No remediation action defined for this alert"

    @pytest.mark.asyncio
    async def test_alert_without_instance(self, seed, database, store, poller):
        alert_id = open_alert(seed, None, "restart")

        result = await RemediationDispatcher(database, store, poller).execute_remediation(alert_id)

        assert result.success is False
        assert result.action == "restart"
        assert "not associated with a specific instance" in result.message
