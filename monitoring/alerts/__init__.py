"""
Alerts Package.

Alert rule definitions, evaluators and the persisted alert store.
The engine lives in ``monitoring.alerts.engine``.
"""

from .definitions import (
    ALERT_RULE_DEFINITIONS,
    REMEDIATION_ACTIONS,
    AlertRuleDefinition,
    RuleCategory,
    get_rule_definition,
)
from .rules import (
    BudgetRule,
    ChannelAuthExpiredRule,
    ConfigDriftRule,
    DegradedInstanceRule,
    HealthCheckFailedRule,
    InstanceContext,
    Outcome,
    RuleDecision,
    RuleEvaluator,
    TokenSpikeRule,
    UnreachableInstanceRule,
    get_default_evaluators,
    select_worst_budget,
)
from .store import AlertStore, UpsertResult


__all__ = [
    # Definitions
    "ALERT_RULE_DEFINITIONS",
    "REMEDIATION_ACTIONS",
    "AlertRuleDefinition",
    "RuleCategory",
    "get_rule_definition",

    # Evaluators
    "Outcome",
    "RuleDecision",
    "InstanceContext",
    "RuleEvaluator",
    "UnreachableInstanceRule",
    "DegradedInstanceRule",
    "ConfigDriftRule",
    "ChannelAuthExpiredRule",
    "HealthCheckFailedRule",
    "TokenSpikeRule",
    "BudgetRule",
    "select_worst_budget",
    "get_default_evaluators",

    # Store
    "AlertStore",
    "UpsertResult",
]
