"""
Alert Rule Definitions.

============================================================
PURPOSE
============================================================
Static description of every alert rule: display name, category,
default severity, default thresholds and the remediation action
recorded on alerts it raises.

The remediation map is derived from this table so the two can
never disagree.

============================================================
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from storage.models.enums import AlertRule, AlertSeverity, RemediationAction


class RuleCategory(Enum):
    """Alert rule categories."""
    HEALTH = "health"
    CONFIG = "config"
    CHANNEL = "channel"
    COST = "cost"


@dataclass(frozen=True)
class AlertRuleDefinition:
    """Definition of one alert rule."""
    rule: AlertRule
    display_name: str
    description: str
    category: RuleCategory
    default_severity: AlertSeverity
    remediation_action: RemediationAction
    default_enabled: bool = True
    default_thresholds: Dict[str, float] = field(default_factory=dict)
    # Lower bound per threshold key
    threshold_minimums: Dict[str, float] = field(default_factory=dict)


ALERT_RULE_DEFINITIONS: Dict[AlertRule, AlertRuleDefinition] = {
    definition.rule: definition
    for definition in (
        AlertRuleDefinition(
            rule=AlertRule.UNREACHABLE_INSTANCE,
            display_name="Unreachable Instance",
            description="Fires when a bot has no gateway heartbeat for a configurable duration.",
            category=RuleCategory.HEALTH,
            default_severity=AlertSeverity.CRITICAL,
            remediation_action=RemediationAction.RESTART,
            default_thresholds={"threshold_minutes": 2},
            threshold_minimums={"threshold_minutes": 1},
        ),
        AlertRuleDefinition(
            rule=AlertRule.DEGRADED_INSTANCE,
            display_name="Degraded Instance",
            description="Fires when a bot stays in DEGRADED health state for a configurable duration.",
            category=RuleCategory.HEALTH,
            default_severity=AlertSeverity.WARNING,
            remediation_action=RemediationAction.RUN_DOCTOR,
            default_thresholds={"threshold_minutes": 5},
            threshold_minimums={"threshold_minutes": 1},
        ),
        AlertRuleDefinition(
            rule=AlertRule.CONFIG_DRIFT,
            display_name="Config Drift",
            description="Fires when the gateway config hash differs from the expected instance config hash.",
            category=RuleCategory.CONFIG,
            default_severity=AlertSeverity.ERROR,
            remediation_action=RemediationAction.RECONCILE,
        ),
        AlertRuleDefinition(
            rule=AlertRule.CHANNEL_AUTH_EXPIRED,
            display_name="Channel Auth Expired",
            description="Fires when any channel auth session is expired or in error state.",
            category=RuleCategory.CHANNEL,
            default_severity=AlertSeverity.ERROR,
            remediation_action=RemediationAction.RE_PAIR_CHANNEL,
        ),
        AlertRuleDefinition(
            rule=AlertRule.HEALTH_CHECK_FAILED,
            display_name="Health Check Failed",
            description="Fires after N consecutive health check failures.",
            category=RuleCategory.HEALTH,
            default_severity=AlertSeverity.ERROR,
            remediation_action=RemediationAction.RESTART,
            default_thresholds={"consecutive_failures": 3},
            threshold_minimums={"consecutive_failures": 1},
        ),
        AlertRuleDefinition(
            rule=AlertRule.TOKEN_SPIKE,
            display_name="Token Usage Spike",
            description="Fires when token usage in a recent window exceeds a multiplier over a baseline window.",
            category=RuleCategory.COST,
            default_severity=AlertSeverity.WARNING,
            remediation_action=RemediationAction.REVIEW_COSTS,
            default_thresholds={
                "multiplier": 2,
                "recent_window_min": 5,
                "baseline_window_min": 30,
                "min_recent_events": 2,
            },
            threshold_minimums={
                "multiplier": 1.1,
                "recent_window_min": 1,
                "baseline_window_min": 5,
                "min_recent_events": 1,
            },
        ),
        AlertRuleDefinition(
            rule=AlertRule.BUDGET_WARNING,
            display_name="Budget Warning",
            description="Fires when monthly spend reaches the warning threshold of the worst applicable budget.",
            category=RuleCategory.COST,
            default_severity=AlertSeverity.WARNING,
            remediation_action=RemediationAction.REVIEW_COSTS,
        ),
        AlertRuleDefinition(
            rule=AlertRule.BUDGET_CRITICAL,
            display_name="Budget Critical",
            description="Fires when monthly spend reaches the critical threshold of the worst applicable budget.",
            category=RuleCategory.COST,
            default_severity=AlertSeverity.CRITICAL,
            remediation_action=RemediationAction.REVIEW_COSTS,
        ),
    )
}


REMEDIATION_ACTIONS: Dict[AlertRule, RemediationAction] = {
    rule: definition.remediation_action
    for rule, definition in ALERT_RULE_DEFINITIONS.items()
}


def get_rule_definition(rule: str) -> Optional[AlertRuleDefinition]:
    """Lookup a rule definition by rule name."""
    try:
        return ALERT_RULE_DEFINITIONS[AlertRule(rule)]
    except ValueError:
        return None


__all__ = [
    "RuleCategory",
    "AlertRuleDefinition",
    "ALERT_RULE_DEFINITIONS",
    "REMEDIATION_ACTIONS",
    "get_rule_definition",
]
