"""
Tests for alert persistence: upsert, resolve and operator transitions.
"""

import threading
from datetime import timedelta

import pytest

from core.exceptions import AlertNotFoundError
from monitoring.alerts.store import AlertStore
from monitoring.models import AlertPayload
from storage.models.enums import AlertRule, AlertSeverity, AlertStatus, RemediationAction
from storage.repositories.monitoring import AlertFilter


def payload(instance_id, rule=AlertRule.UNREACHABLE_INSTANCE, severity=AlertSeverity.CRITICAL, **fields):
    fields.setdefault("title", f"{rule.value} on {instance_id}")
    fields.setdefault("message", "breach detected")
    return AlertPayload(rule=rule, instance_id=instance_id, severity=severity, **fields)


@pytest.fixture
def store(database, clock):
    return AlertStore(database, clock=clock)


# ============================================================
# UPSERT
# ============================================================

class TestUpsert:

    def test_first_breach_creates_active_alert(self, store, seed, clock):
        instance_id = seed.instance("bot-1")

        result = store.upsert_alert(
            payload(instance_id, remediation_action=RemediationAction.RESTART, detail="heartbeat 3m old")
        )

        assert result.created is True
        assert result.should_notify is True
        alert = store.get_alert(result.alert.id)
        assert alert.status == AlertStatus.ACTIVE.value
        assert alert.consecutive_hits == 1
        assert alert.first_triggered_at == clock.now()
        assert alert.remediation_action == "restart"
        assert alert.detail == "heartbeat 3m old"

    def test_repeat_breach_updates_in_place(self, store, seed, clock):
        instance_id = seed.instance("bot-1")
        first = store.upsert_alert(payload(instance_id))

        clock.advance(60)
        second = store.upsert_alert(payload(instance_id, message="still down"))

        assert second.alert.id == first.alert.id
        assert second.created is False
        assert second.should_notify is False
        alert = store.get_alert(first.alert.id)
        assert alert.consecutive_hits == 2
        assert alert.message == "still down"
        assert alert.last_triggered_at == clock.now()
        assert alert.first_triggered_at == clock.now() - timedelta(seconds=60)

    def test_severity_escalation_notifies(self, store, seed):
        instance_id = seed.instance("bot-1")
        store.upsert_alert(payload(instance_id, rule=AlertRule.BUDGET_WARNING, severity=AlertSeverity.WARNING))

        result = store.upsert_alert(payload(instance_id, rule=AlertRule.BUDGET_WARNING, severity=AlertSeverity.ERROR))

        assert result.escalated is True
        assert result.should_notify is True
        assert store.get_alert(result.alert.id).severity == AlertSeverity.ERROR.value

    def test_acknowledged_alert_is_reactivated(self, store, seed):
        instance_id = seed.instance("bot-1")
        created = store.upsert_alert(payload(instance_id))
        store.acknowledge_alert(created.alert.id, acknowledged_by="ops")

        result = store.upsert_alert(payload(instance_id))

        assert result.alert.id == created.alert.id
        assert result.reactivated is True
        alert = store.get_alert(created.alert.id)
        assert alert.status == AlertStatus.ACTIVE.value
        assert alert.acknowledged_by is None
        assert alert.acknowledged_at is None

    def test_resolved_alert_is_not_reused(self, store, seed):
        instance_id = seed.instance("bot-1")
        first = store.upsert_alert(payload(instance_id))
        store.resolve_alert_by_key(AlertRule.UNREACHABLE_INSTANCE.value, instance_id)

        second = store.upsert_alert(payload(instance_id))

        assert second.created is True
        assert second.alert.id != first.alert.id
        assert store.get_alert(first.alert.id).status == AlertStatus.RESOLVED.value

    def test_keys_are_per_rule_and_instance(self, store, seed):
        bot_1 = seed.instance("bot-1")
        bot_2 = seed.instance("bot-2")

        a = store.upsert_alert(payload(bot_1))
        b = store.upsert_alert(payload(bot_2))
        c = store.upsert_alert(payload(bot_1, rule=AlertRule.CONFIG_DRIFT, severity=AlertSeverity.WARNING))

        assert len({a.alert.id, b.alert.id, c.alert.id}) == 3
        assert store.get_active_alert_count() == 3


# ============================================================
# CONCURRENT UPSERTS
# ============================================================

def upsert_concurrently(stores, alert_payload, workers):
    """Start every upsert at once; return results and raised errors."""
    barrier = threading.Barrier(workers)
    results, errors = [], []

    def worker(index):
        barrier.wait(timeout=5)
        try:
            results.append(stores[index % len(stores)].upsert_alert(alert_payload))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results, errors


class TestConcurrentUpsert:

    def test_same_key_from_many_threads_yields_one_alert(self, file_database, file_seed, clock):
        instance_id = file_seed.instance("bot-1")
        store = AlertStore(file_database, clock=clock)

        results, errors = upsert_concurrently([store], payload(instance_id), workers=8)

        assert errors == []
        assert sum(1 for r in results if r.created) == 1
        assert len({r.alert.id for r in results}) == 1
        page = store.list_alerts(AlertFilter(instance_id=instance_id))
        assert page["total"] == 1
        assert page["data"][0].consecutive_hits == 8

    def test_separate_stores_share_one_open_alert(self, file_database, file_seed, clock):
        instance_id = file_seed.instance("bot-1")
        stores = [AlertStore(file_database, clock=clock) for _ in range(2)]

        results, errors = upsert_concurrently(stores, payload(instance_id), workers=2)

        assert errors == []
        assert len(results) == 2
        assert sum(1 for r in results if r.created) == 1
        assert len({r.alert.id for r in results}) == 1
        page = stores[0].list_alerts(AlertFilter(instance_id=instance_id))
        assert page["total"] == 1
        assert page["data"][0].status == AlertStatus.ACTIVE.value


# ============================================================
# RESOLVE
# ============================================================

class TestResolveByKey:

    def test_resolves_active_alert(self, store, seed, clock):
        instance_id = seed.instance("bot-1")
        created = store.upsert_alert(payload(instance_id))

        resolved = store.resolve_alert_by_key(AlertRule.UNREACHABLE_INSTANCE.value, instance_id)

        assert resolved.id == created.alert.id
        alert = store.get_alert(created.alert.id)
        assert alert.status == AlertStatus.RESOLVED.value
        assert alert.resolved_at == clock.now()

    def test_resolves_acknowledged_alert(self, store, seed):
        instance_id = seed.instance("bot-1")
        created = store.upsert_alert(payload(instance_id))
        store.acknowledge_alert(created.alert.id)

        assert store.resolve_alert_by_key(AlertRule.UNREACHABLE_INSTANCE.value, instance_id) is not None

    def test_suppressed_alert_is_left_alone(self, store, seed):
        instance_id = seed.instance("bot-1")
        created = store.upsert_alert(payload(instance_id))
        store.suppress_alert(created.alert.id)

        assert store.resolve_alert_by_key(AlertRule.UNREACHABLE_INSTANCE.value, instance_id) is None
        assert store.get_alert(created.alert.id).status == AlertStatus.SUPPRESSED.value

    def test_no_alert_is_a_no_op(self, store, seed):
        instance_id = seed.instance("bot-1")
        assert store.resolve_alert_by_key(AlertRule.UNREACHABLE_INSTANCE.value, instance_id) is None


# ============================================================
# OPERATOR TRANSITIONS
# ============================================================

class TestTransitions:

    def test_acknowledge(self, store, seed, clock):
        instance_id = seed.instance("bot-1")
        created = store.upsert_alert(payload(instance_id))

        alert = store.acknowledge_alert(created.alert.id, acknowledged_by="alice")

        assert alert.status == AlertStatus.ACKNOWLEDGED.value
        assert alert.acknowledged_by == "alice"
        assert alert.acknowledged_at == clock.now()

    @pytest.mark.parametrize("operation", ["acknowledge_alert", "resolve_alert", "suppress_alert"])
    def test_unknown_alert_raises(self, store, operation):
        with pytest.raises(AlertNotFoundError):
            getattr(store, operation)("missing-alert")

    def test_record_remediation_success_resolves(self, store, seed):
        instance_id = seed.instance("bot-1")
        created = store.upsert_alert(payload(instance_id))

        alert = store.record_remediation(created.alert.id, "Success: restarted", resolve=True)

        assert alert.remediation_note == "Success: restarted"
        assert alert.status == AlertStatus.RESOLVED.value

    def test_record_remediation_failure_keeps_status(self, store, seed):
        instance_id = seed.instance("bot-1")
        created = store.upsert_alert(payload(instance_id))

        alert = store.record_remediation(created.alert.id, "Failed: no reconciler", resolve=False)

        assert alert.status == AlertStatus.ACTIVE.value
        assert alert.resolved_at is None


# ============================================================
# QUERIES
# ============================================================

class TestQueries:

    @pytest.fixture
    def populated(self, store, seed, clock):
        bot_1 = seed.instance("bot-1")
        bot_2 = seed.instance("bot-2")
        store.upsert_alert(payload(bot_1))
        clock.advance(10)
        store.upsert_alert(payload(bot_2, rule=AlertRule.CONFIG_DRIFT, severity=AlertSeverity.WARNING))
        clock.advance(10)
        acked = store.upsert_alert(payload(bot_2, rule=AlertRule.HEALTH_CHECK_FAILED, severity=AlertSeverity.ERROR))
        store.acknowledge_alert(acked.alert.id)
        clock.advance(10)
        store.upsert_alert(payload(bot_1, rule=AlertRule.CHANNEL_AUTH_EXPIRED, severity=AlertSeverity.WARNING))
        store.resolve_alert_by_key(AlertRule.CHANNEL_AUTH_EXPIRED.value, bot_1)
        return bot_1, bot_2

    def test_list_defaults_newest_first(self, store, populated):
        page = store.list_alerts()

        assert page["total"] == 4
        assert page["page"] == 1
        assert page["limit"] == 50
        rules = [alert.rule for alert in page["data"]]
        assert rules[0] == AlertRule.CHANNEL_AUTH_EXPIRED.value
        assert rules[-1] == AlertRule.UNREACHABLE_INSTANCE.value

    def test_list_filters(self, store, populated):
        bot_1, bot_2 = populated

        by_instance = store.list_alerts(AlertFilter(instance_id=bot_2))
        assert by_instance["total"] == 2

        by_status = store.list_alerts(AlertFilter(status=AlertStatus.ACKNOWLEDGED.value))
        assert [a.rule for a in by_status["data"]] == [AlertRule.HEALTH_CHECK_FAILED.value]

        by_severity = store.list_alerts(AlertFilter(severity=AlertSeverity.WARNING.value))
        assert by_severity["total"] == 2

        by_rule = store.list_alerts(AlertFilter(rule=AlertRule.UNREACHABLE_INSTANCE.value))
        assert [a.instance_id for a in by_rule["data"]] == [bot_1]

    def test_pagination(self, store, populated):
        page = store.list_alerts(AlertFilter(page=2, limit=3))

        assert page["total"] == 4
        assert len(page["data"]) == 1
        assert page["data"][0].rule == AlertRule.UNREACHABLE_INSTANCE.value

    def test_summary_counts_open_alerts(self, store, populated):
        summary = store.get_alert_summary()

        assert summary.total == 3
        assert summary.by_severity == {"CRITICAL": 1, "WARNING": 1, "ERROR": 1}
        assert summary.by_status == {"ACTIVE": 2, "ACKNOWLEDGED": 1, "RESOLVED": 1}
        assert store.get_active_alert_count() == 2
