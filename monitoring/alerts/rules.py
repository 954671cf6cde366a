"""
Alert Rules.

============================================================
PURPOSE
============================================================
One evaluator per alert rule. Evaluators are pure: they read an
InstanceContext plus their thresholds and return decisions. The
alert engine turns FIRE into an upsert and RESOLVE into a
resolve-by-key; SKIP touches nothing.

PRINCIPLES:
- All thresholds are explicit and configurable
- No I/O inside an evaluator
- Exactly one decision per rule per instance per tick

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from monitoring.alerts.definitions import ALERT_RULE_DEFINITIONS
from monitoring.models import AlertPayload
from storage.models.costs import BudgetConfig
from storage.models.enums import (
    AlertRule,
    AlertSeverity,
    ChannelAuthState,
    ConnectionStatus,
    HealthState,
)
from storage.models.fleet import AgentConnection, BotInstance, ChannelAuthSession
from storage.repositories.costs import TokenWindow


logger = logging.getLogger(__name__)


# ============================================================
# DECISIONS
# ============================================================

class Outcome(Enum):
    FIRE = "fire"
    RESOLVE = "resolve"
    SKIP = "skip"


@dataclass
class RuleDecision:
    """What the engine must do for one (rule, instance) this tick."""
    rule: AlertRule
    outcome: Outcome
    payload: Optional[AlertPayload] = None

    @classmethod
    def fire(cls, payload: AlertPayload) -> "RuleDecision":
        return cls(rule=payload.rule, outcome=Outcome.FIRE, payload=payload)

    @classmethod
    def resolve(cls, rule: AlertRule) -> "RuleDecision":
        return cls(rule=rule, outcome=Outcome.RESOLVE)

    @classmethod
    def skip(cls, rule: AlertRule) -> "RuleDecision":
        return cls(rule=rule, outcome=Outcome.SKIP)


# ============================================================
# CONTEXT
# ============================================================

_EMPTY_WINDOW = TokenWindow(event_count=0, total_tokens=0)


@dataclass
class InstanceContext:
    """Everything the evaluators may read about one instance."""
    instance: BotInstance
    now: datetime
    connection: Optional[AgentConnection] = None
    auth_sessions: List[ChannelAuthSession] = field(default_factory=list)
    budgets: List[BudgetConfig] = field(default_factory=list)
    month_spend_cents: int = 0
    recent_tokens: TokenWindow = _EMPTY_WINDOW
    baseline_tokens: TokenWindow = _EMPTY_WINDOW
    # With budget_critical switched off a critical breach reports as a warning
    budget_critical_enabled: bool = True

    def minutes_since(self, moment: Optional[datetime]) -> float:
        if moment is None:
            return float("inf")
        return (self.now - moment).total_seconds() / 60.0


# ============================================================
# EVALUATOR BASE
# ============================================================

class RuleEvaluator(ABC):
    """
    Base class for rule evaluators.

    ``rules`` lists every rule the evaluator decides; most decide
    exactly one, the budget evaluator decides two.
    """

    rules: Tuple[AlertRule, ...] = ()

    @property
    def name(self) -> str:
        return "/".join(rule.value for rule in self.rules)

    @abstractmethod
    def evaluate(self, ctx: InstanceContext, thresholds: Dict[str, float]) -> List[RuleDecision]:
        pass

    def _payload(self, rule: AlertRule, ctx: InstanceContext, **fields) -> AlertPayload:
        definition = ALERT_RULE_DEFINITIONS[rule]
        fields.setdefault("severity", definition.default_severity)
        return AlertPayload(
            rule=rule,
            instance_id=ctx.instance.id,
            fleet_id=ctx.instance.fleet_id,
            remediation_action=definition.remediation_action,
            **fields,
        )


# ============================================================
# HEALTH RULES
# ============================================================

class UnreachableInstanceRule(RuleEvaluator):
    """No heartbeat for threshold_minutes while the connection is down or absent."""

    rules = (AlertRule.UNREACHABLE_INSTANCE,)

    DOWN_STATUSES = (ConnectionStatus.ERROR.value, ConnectionStatus.DISCONNECTED.value)

    def evaluate(self, ctx: InstanceContext, thresholds: Dict[str, float]) -> List[RuleDecision]:
        rule = self.rules[0]
        connection = ctx.connection
        last_heartbeat = connection.last_heartbeat if connection else None
        minutes = ctx.minutes_since(last_heartbeat)

        is_down = connection is None or connection.status in self.DOWN_STATUSES
        if not is_down or minutes < thresholds["threshold_minutes"]:
            return [RuleDecision.resolve(rule)]

        name = ctx.instance.name
        if last_heartbeat is None:
            message = f'Instance "{name}" is unreachable and has never sent a heartbeat'
        else:
            message = f'Instance "{name}" has been unreachable for {round(minutes)} minutes'
        return [
            RuleDecision.fire(
                self._payload(
                    rule,
                    ctx,
                    title=f"Instance unreachable: {name}",
                    message=message,
                    detail=f"Last heartbeat: {last_heartbeat.isoformat() if last_heartbeat else 'never'}",
                )
            )
        ]


class DegradedInstanceRule(RuleEvaluator):
    """Health DEGRADED for at least threshold_minutes since the last check."""

    rules = (AlertRule.DEGRADED_INSTANCE,)

    def evaluate(self, ctx: InstanceContext, thresholds: Dict[str, float]) -> List[RuleDecision]:
        rule = self.rules[0]
        instance = ctx.instance
        if instance.health != HealthState.DEGRADED.value:
            return [RuleDecision.resolve(rule)]

        if instance.last_health_check_at is None:
            minutes = 0.0
        else:
            minutes = ctx.minutes_since(instance.last_health_check_at)

        # Still inside the hysteresis window: leave any open alert alone
        if minutes < thresholds["threshold_minutes"]:
            return [RuleDecision.skip(rule)]

        return [
            RuleDecision.fire(
                self._payload(
                    rule,
                    ctx,
                    title=f"Instance degraded: {instance.name}",
                    message=f'Instance "{instance.name}" has been degraded for {round(minutes)} minutes',
                )
            )
        ]


class HealthCheckFailedRule(RuleEvaluator):

    rules = (AlertRule.HEALTH_CHECK_FAILED,)

    def evaluate(self, ctx: InstanceContext, thresholds: Dict[str, float]) -> List[RuleDecision]:
        rule = self.rules[0]
        instance = ctx.instance
        if instance.error_count < thresholds["consecutive_failures"]:
            return [RuleDecision.resolve(rule)]

        return [
            RuleDecision.fire(
                self._payload(
                    rule,
                    ctx,
                    title=f"Health check failed: {instance.name}",
                    message=f'{instance.error_count} consecutive health check failures on "{instance.name}"',
                    detail=f"Last error: {instance.last_error}" if instance.last_error else None,
                )
            )
        ]


# ============================================================
# CONFIG & CHANNEL RULES
# ============================================================

class ConfigDriftRule(RuleEvaluator):

    rules = (AlertRule.CONFIG_DRIFT,)

    def evaluate(self, ctx: InstanceContext, thresholds: Dict[str, float]) -> List[RuleDecision]:
        rule = self.rules[0]
        expected = ctx.instance.config_hash
        applied = ctx.connection.config_hash if ctx.connection else None
        if not expected or not applied or expected == applied:
            return [RuleDecision.resolve(rule)]

        name = ctx.instance.name
        return [
            RuleDecision.fire(
                self._payload(
                    rule,
                    ctx,
                    title=f"Config drift: {name}",
                    message=f'Configuration drift detected on "{name}"',
                    detail=f"Instance hash: {expected}, Gateway hash: {applied}",
                )
            )
        ]


class ChannelAuthExpiredRule(RuleEvaluator):

    rules = (AlertRule.CHANNEL_AUTH_EXPIRED,)

    FAILED_STATES = (ChannelAuthState.EXPIRED.value, ChannelAuthState.ERROR.value)

    def evaluate(self, ctx: InstanceContext, thresholds: Dict[str, float]) -> List[RuleDecision]:
        rule = self.rules[0]
        failed = [s for s in ctx.auth_sessions if s.state in self.FAILED_STATES]
        if not failed:
            return [RuleDecision.resolve(rule)]

        name = ctx.instance.name
        channels = ", ".join(s.channel_type for s in failed)
        return [
            RuleDecision.fire(
                self._payload(
                    rule,
                    ctx,
                    title=f"Channel auth expired: {name}",
                    message=f'Channel auth expired/failed on "{name}"',
                    detail=f"Affected channels: {channels}",
                )
            )
        ]


# ============================================================
# COST RULES
# ============================================================

class TokenSpikeRule(RuleEvaluator):
    """
    Recent tokens/min above multiplier x baseline tokens/min.

    No recent events resolves. No baseline events skips, because
    a spike cannot be measured without a baseline.
    """

    rules = (AlertRule.TOKEN_SPIKE,)

    def evaluate(self, ctx: InstanceContext, thresholds: Dict[str, float]) -> List[RuleDecision]:
        rule = self.rules[0]
        recent = ctx.recent_tokens
        baseline = ctx.baseline_tokens

        if recent.event_count == 0:
            return [RuleDecision.resolve(rule)]
        if baseline.event_count == 0:
            return [RuleDecision.skip(rule)]

        recent_rate = recent.total_tokens / thresholds["recent_window_min"]
        baseline_rate = baseline.total_tokens / thresholds["baseline_window_min"]
        multiplier = thresholds["multiplier"]

        if recent.event_count < thresholds["min_recent_events"] or recent_rate <= multiplier * baseline_rate:
            return [RuleDecision.resolve(rule)]

        name = ctx.instance.name
        ratio = recent_rate / baseline_rate if baseline_rate > 0 else float("inf")
        ratio_text = f"{ratio:.1f}x" if ratio != float("inf") else "unbounded"
        return [
            RuleDecision.fire(
                self._payload(
                    rule,
                    ctx,
                    title=f"Token usage spike: {name}",
                    message=(
                        f'Token usage on "{name}" is {ratio_text} the baseline rate '
                        f"({recent_rate:.0f} vs {baseline_rate:.0f} tokens/min)"
                    ),
                    detail=(
                        f"Recent window: {recent.total_tokens} tokens in {recent.event_count} events; "
                        f"baseline window: {baseline.total_tokens} tokens in {baseline.event_count} events"
                    ),
                )
            )
        ]


@dataclass(frozen=True)
class BudgetBreach:
    budget: BudgetConfig
    spend_pct: float
    critical: bool


def select_worst_budget(
    budgets: Sequence[BudgetConfig],
    spend_cents: int,
    include_critical: bool = True,
) -> Optional[BudgetBreach]:
    """
    Pick the single worst breached budget.

    The highest-percentage budget past its critical threshold wins;
    failing that, the highest past its warning threshold. Budgets
    with a non-positive limit are ignored. With ``include_critical``
    off every breach is graded against the warning threshold only.
    """
    worst_critical: Optional[BudgetBreach] = None
    worst_warning: Optional[BudgetBreach] = None

    for budget in budgets:
        if budget.monthly_limit_cents <= 0:
            continue
        spend_pct = spend_cents / budget.monthly_limit_cents * 100

        if include_critical and spend_pct >= budget.critical_threshold_pct:
            if worst_critical is None or spend_pct > worst_critical.spend_pct:
                worst_critical = BudgetBreach(budget, spend_pct, critical=True)
        elif spend_pct >= budget.warn_threshold_pct:
            if worst_warning is None or spend_pct > worst_warning.spend_pct:
                worst_warning = BudgetBreach(budget, spend_pct, critical=False)

    return worst_critical or worst_warning


class BudgetRule(RuleEvaluator):
    """
    Monthly spend against every applicable budget.

    budget_warning and budget_critical are mutually exclusive: firing
    one resolves the other.
    """

    rules = (AlertRule.BUDGET_WARNING, AlertRule.BUDGET_CRITICAL)

    def evaluate(self, ctx: InstanceContext, thresholds: Dict[str, float]) -> List[RuleDecision]:
        breach = select_worst_budget(
            ctx.budgets,
            ctx.month_spend_cents,
            include_critical=ctx.budget_critical_enabled,
        )
        if breach is None:
            return [
                RuleDecision.resolve(AlertRule.BUDGET_WARNING),
                RuleDecision.resolve(AlertRule.BUDGET_CRITICAL),
            ]

        budget = breach.budget
        name = ctx.instance.name
        if breach.critical:
            fired, cleared = AlertRule.BUDGET_CRITICAL, AlertRule.BUDGET_WARNING
            threshold = budget.critical_threshold_pct
            label = "critical"
        else:
            fired, cleared = AlertRule.BUDGET_WARNING, AlertRule.BUDGET_CRITICAL
            threshold = budget.warn_threshold_pct
            label = "warning"

        payload = self._payload(
            fired,
            ctx,
            title=f"Budget {label}: {name}",
            message=(
                f'Monthly spend on "{name}" is at {breach.spend_pct:.1f}% of budget '
                f'"{budget.name or budget.id}" ({label} threshold {threshold}%)'
            ),
            detail=(
                f"Spend: {ctx.month_spend_cents} cents of {budget.monthly_limit_cents} cents"
            ),
        )
        return [RuleDecision.fire(payload), RuleDecision.resolve(cleared)]


# ============================================================
# REGISTRY
# ============================================================

def get_default_evaluators() -> List[RuleEvaluator]:
    """One evaluator per rule family, covering every AlertRule."""
    return [
        UnreachableInstanceRule(),
        DegradedInstanceRule(),
        ConfigDriftRule(),
        ChannelAuthExpiredRule(),
        HealthCheckFailedRule(),
        TokenSpikeRule(),
        BudgetRule(),
    ]


__all__ = [
    "Outcome",
    "RuleDecision",
    "InstanceContext",
    "RuleEvaluator",
    "UnreachableInstanceRule",
    "DegradedInstanceRule",
    "HealthCheckFailedRule",
    "ConfigDriftRule",
    "ChannelAuthExpiredRule",
    "TokenSpikeRule",
    "BudgetBreach",
    "select_worst_budget",
    "BudgetRule",
    "get_default_evaluators",
]
