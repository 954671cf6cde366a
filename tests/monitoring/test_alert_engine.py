"""
End-to-end tests for the alert engine against an in-memory database.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from monitoring.alerts.engine import AlertEngine
from monitoring.alerts.rules import HealthCheckFailedRule, RuleEvaluator
from monitoring.config import AlertSettings, RuleSettings
from storage.models.enums import (
    AlertRule,
    AlertSeverity,
    AlertStatus,
    ChannelAuthState,
    ConnectionStatus,
    HealthState,
    InstanceStatus,
)
from storage.models.fleet import BotInstance
from storage.repositories.instances import ConnectionRepository, InstanceRepository
from storage.repositories.monitoring import AlertFilter


def make_engine(database, clock, notifier=None, settings=None, evaluators=None):
    return AlertEngine(
        database,
        settings=settings,
        clock=clock,
        notifier=notifier,
        evaluators=evaluators,
    )


def open_alerts(engine, **criteria):
    return [
        alert
        for alert in engine.store.list_alerts(AlertFilter(**criteria))["data"]
        if alert.status != AlertStatus.RESOLVED.value
    ]


def alert_for(engine, rule, instance_id):
    alerts = engine.store.list_alerts(AlertFilter(rule=rule.value, instance_id=instance_id))["data"]
    return alerts[0] if alerts else None


# ============================================================
# HEALTH SCENARIOS
# ============================================================

class TestUnreachableScenario:

    @pytest.mark.asyncio
    async def test_fire_repeat_then_resolve(self, seed, database, clock):
        notifier = MagicMock()
        instance_id = seed.instance(
            "bot-1",
            connection_status=ConnectionStatus.ERROR,
            last_heartbeat=clock.now() - timedelta(minutes=3),
        )
        engine = make_engine(database, clock, notifier=notifier)

        summary = await engine.evaluate_all()

        assert summary.instances == 1
        assert summary.fired == 1
        assert summary.errors == 0
        alert = alert_for(engine, AlertRule.UNREACHABLE_INSTANCE, instance_id)
        assert alert.status == AlertStatus.ACTIVE.value
        assert alert.severity == AlertSeverity.CRITICAL.value
        assert alert.remediation_action == "restart"

        notifier.dispatch.assert_called_once()
        notification = notifier.dispatch.call_args.args[0]
        assert notification.severity is AlertSeverity.CRITICAL
        assert notification.rule == AlertRule.UNREACHABLE_INSTANCE.value
        assert notification.bot_instance_id == instance_id

        # Still down: same alert, no second notification
        clock.advance(60)
        await engine.evaluate_all()
        alert = alert_for(engine, AlertRule.UNREACHABLE_INSTANCE, instance_id)
        assert alert.consecutive_hits == 2
        assert notifier.dispatch.call_count == 1

        # Recovered
        with database.transaction_scope() as session:
            ConnectionRepository(session).mark_connected(instance_id, clock.now(), 12)
        summary = await engine.evaluate_all()

        assert summary.resolved == 1
        alert = alert_for(engine, AlertRule.UNREACHABLE_INSTANCE, instance_id)
        assert alert.status == AlertStatus.RESOLVED.value
        assert alert.resolved_at == clock.now()

    @pytest.mark.asyncio
    async def test_healthy_fleet_raises_nothing(self, seed, database, clock):
        seed.instance("bot-1")
        seed.instance("bot-2")

        engine = make_engine(database, clock)
        summary = await engine.evaluate_all()

        assert summary.instances == 2
        assert summary.fired == 0
        assert summary.resolved == 0
        assert engine.store.list_alerts()["total"] == 0


class TestHealthCheckFailedScenario:

    @pytest.mark.asyncio
    async def test_error_count_crossing_threshold(self, seed, database, clock):
        instance_id = seed.instance("bot-1")
        engine = make_engine(database, clock)

        await engine.evaluate_all()
        assert alert_for(engine, AlertRule.HEALTH_CHECK_FAILED, instance_id) is None

        for failures in (1, 2, 3):
            with database.transaction_scope() as session:
                InstanceRepository(session).record_poll_failure(instance_id, "connection refused", clock.now())
            await engine.evaluate_all()

            alert = alert_for(engine, AlertRule.HEALTH_CHECK_FAILED, instance_id)
            if failures < 3:
                assert alert is None, f"fired after {failures} failure(s)"

        assert seed.get(BotInstance, instance_id).error_count == 3
        assert alert.consecutive_hits == 1
        assert alert.status == AlertStatus.ACTIVE.value
        assert alert.detail == "Last error: connection refused"

        with database.transaction_scope() as session:
            InstanceRepository(session).record_poll_success(instance_id, HealthState.HEALTHY, clock.now())
        await engine.evaluate_all()

        assert alert_for(engine, AlertRule.HEALTH_CHECK_FAILED, instance_id).status == AlertStatus.RESOLVED.value


class TestInstanceSelection:

    @pytest.mark.asyncio
    async def test_creating_and_deleting_are_not_evaluated(self, seed, database, clock):
        for name, status in (("bot-new", InstanceStatus.CREATING), ("bot-old", InstanceStatus.DELETING)):
            seed.instance(name, status=status, connection=False)
        stopped = seed.instance("bot-stopped", status=InstanceStatus.STOPPED, connection=False)

        engine = make_engine(database, clock)
        summary = await engine.evaluate_all()

        assert summary.instances == 1
        assert [a.instance_id for a in open_alerts(engine)] == [stopped]


# ============================================================
# SETTINGS & ISOLATION
# ============================================================

class TestRuleSettings:

    @pytest.mark.asyncio
    async def test_disabled_rule_never_fires(self, seed, database, clock):
        seed.instance("bot-1", connection_status=ConnectionStatus.ERROR, last_heartbeat=None)
        settings = AlertSettings(rules={AlertRule.UNREACHABLE_INSTANCE: RuleSettings(enabled=False)})

        engine = make_engine(database, clock, settings=settings)
        summary = await engine.evaluate_all()

        assert summary.fired == 0
        assert open_alerts(engine) == []

    @pytest.mark.asyncio
    async def test_custom_threshold(self, seed, database, clock):
        instance_id = seed.instance(
            "bot-1",
            connection_status=ConnectionStatus.ERROR,
            last_heartbeat=clock.now() - timedelta(minutes=3),
        )
        settings = AlertSettings(
            rules={AlertRule.UNREACHABLE_INSTANCE: RuleSettings(thresholds={"threshold_minutes": 10})}
        )

        engine = make_engine(database, clock, settings=settings)
        await engine.evaluate_all()

        assert alert_for(engine, AlertRule.UNREACHABLE_INSTANCE, instance_id) is None


class ExplodingRule(RuleEvaluator):

    rules = (AlertRule.CONFIG_DRIFT,)

    def evaluate(self, ctx, thresholds):
        raise RuntimeError("boom")


class TestIsolation:

    @pytest.mark.asyncio
    async def test_failing_evaluator_does_not_block_others(self, seed, database, clock):
        instance_id = seed.instance("bot-1", error_count=5)

        engine = make_engine(database, clock, evaluators=[ExplodingRule(), HealthCheckFailedRule()])
        summary = await engine.evaluate_all()

        assert summary.errors == 1
        assert summary.fired == 1
        assert alert_for(engine, AlertRule.HEALTH_CHECK_FAILED, instance_id) is not None

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_fail_the_tick(self, seed, database, clock):
        notifier = MagicMock()
        notifier.dispatch.side_effect = RuntimeError("dispatch broke")
        seed.instance("bot-1", error_count=5)

        summary = await make_engine(database, clock, notifier=notifier).evaluate_all()

        # The error is contained inside the evaluator that fired
        assert summary.errors == 1
        assert summary.fired == 1


# ============================================================
# CHANNEL & CONFIG SCENARIOS
# ============================================================

class TestChannelAndConfigRules:

    @pytest.mark.asyncio
    async def test_expired_channel_and_drift(self, seed, database, clock):
        instance_id = seed.instance("bot-1", config_hash="desired-1", applied_config_hash="applied-0")
        seed.auth_session(instance_id, "whatsapp", ChannelAuthState.EXPIRED)

        engine = make_engine(database, clock)
        await engine.evaluate_all()

        rules = {a.rule for a in open_alerts(engine, instance_id=instance_id)}
        assert rules == {AlertRule.CONFIG_DRIFT.value, AlertRule.CHANNEL_AUTH_EXPIRED.value}
        auth_alert = alert_for(engine, AlertRule.CHANNEL_AUTH_EXPIRED, instance_id)
        assert auth_alert.remediation_action == "re-pair-channel"


# ============================================================
# COST SCENARIOS
# ============================================================

class TestBudgetScenario:

    @pytest.mark.asyncio
    async def test_worst_budget_wins(self, seed, database, clock):
        fleet_id = seed.fleet()
        instance_id = seed.instance("bot-1", fleet_id=fleet_id)
        seed.budget(10_000, instance_id=instance_id, name="bot budget")
        seed.budget(15_833, fleet_id=fleet_id, name="fleet budget")
        seed.cost_event(instance_id, minutes_ago=60 * 24, cost_cents=9_500)

        engine = make_engine(database, clock)
        await engine.evaluate_all()

        critical = alert_for(engine, AlertRule.BUDGET_CRITICAL, instance_id)
        assert critical.status == AlertStatus.ACTIVE.value
        assert "95.0%" in critical.message
        assert '"bot budget"' in critical.message
        assert alert_for(engine, AlertRule.BUDGET_WARNING, instance_id) is None

    @pytest.mark.asyncio
    async def test_warning_escalates_to_critical(self, seed, database, clock):
        instance_id = seed.instance("bot-1")
        seed.budget(10_000, instance_id=instance_id)
        seed.cost_event(instance_id, minutes_ago=120, cost_cents=8_000)

        engine = make_engine(database, clock)
        await engine.evaluate_all()
        assert alert_for(engine, AlertRule.BUDGET_WARNING, instance_id).status == AlertStatus.ACTIVE.value

        seed.cost_event(instance_id, minutes_ago=1, cost_cents=1_500)
        await engine.evaluate_all()

        assert alert_for(engine, AlertRule.BUDGET_WARNING, instance_id).status == AlertStatus.RESOLVED.value
        assert alert_for(engine, AlertRule.BUDGET_CRITICAL, instance_id).status == AlertStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_last_month_spend_does_not_count(self, seed, database, clock):
        instance_id = seed.instance("bot-1")
        seed.budget(10_000, instance_id=instance_id)
        seed.cost_event(instance_id, minutes_ago=60 * 24 * 20, cost_cents=9_900)

        engine = make_engine(database, clock)
        await engine.evaluate_all()

        assert open_alerts(engine) == []

    @pytest.mark.asyncio
    async def test_critical_breach_reports_warning_when_critical_disabled(self, seed, database, clock):
        instance_id = seed.instance("bot-1")
        seed.budget(10_000, instance_id=instance_id)
        seed.cost_event(instance_id, minutes_ago=60, cost_cents=9_500)
        settings = AlertSettings(rules={AlertRule.BUDGET_CRITICAL: RuleSettings(enabled=False)})

        engine = make_engine(database, clock, settings=settings)
        summary = await engine.evaluate_all()

        warning = alert_for(engine, AlertRule.BUDGET_WARNING, instance_id)
        assert summary.fired == 1
        assert warning.status == AlertStatus.ACTIVE.value
        assert warning.severity == AlertSeverity.WARNING.value
        assert "95.0%" in warning.message
        assert alert_for(engine, AlertRule.BUDGET_CRITICAL, instance_id) is None

    @pytest.mark.asyncio
    async def test_nothing_fires_when_both_budget_rules_disabled(self, seed, database, clock):
        instance_id = seed.instance("bot-1")
        seed.budget(10_000, instance_id=instance_id)
        seed.cost_event(instance_id, minutes_ago=60, cost_cents=9_500)
        settings = AlertSettings(rules={
            AlertRule.BUDGET_WARNING: RuleSettings(enabled=False),
            AlertRule.BUDGET_CRITICAL: RuleSettings(enabled=False),
        })

        engine = make_engine(database, clock, settings=settings)
        await engine.evaluate_all()

        assert open_alerts(engine) == []


class TestTokenSpikeScenario:

    @pytest.mark.asyncio
    async def test_spike_fires_then_resolves_when_quiet(self, seed, database, clock):
        instance_id = seed.instance("bot-1")
        seed.cost_event(instance_id, minutes_ago=20, tokens=3_000)
        seed.cost_event(instance_id, minutes_ago=10, tokens=3_000)
        seed.cost_event(instance_id, minutes_ago=2, tokens=5_000)
        seed.cost_event(instance_id, minutes_ago=1, tokens=5_000)

        engine = make_engine(database, clock)
        await engine.evaluate_all()

        spike = alert_for(engine, AlertRule.TOKEN_SPIKE, instance_id)
        assert spike.status == AlertStatus.ACTIVE.value
        assert spike.severity == AlertSeverity.WARNING.value
        assert "10.0x" in spike.message

        # Ten quiet minutes later the recent window is empty
        clock.advance(600)
        await engine.evaluate_all()

        assert alert_for(engine, AlertRule.TOKEN_SPIKE, instance_id).status == AlertStatus.RESOLVED.value

    @pytest.mark.asyncio
    async def test_event_on_window_boundary_counts_as_recent(self, seed, database, clock):
        instance_id = seed.instance("bot-1")
        seed.cost_event(instance_id, minutes_ago=20, tokens=600)
        seed.cost_event(instance_id, minutes_ago=5, tokens=5_000)
        seed.cost_event(instance_id, minutes_ago=0, tokens=5_000)

        engine = make_engine(database, clock)
        await engine.evaluate_all()

        assert alert_for(engine, AlertRule.TOKEN_SPIKE, instance_id) is not None
