"""
Fleet Monitoring Package.

============================================================
PURPOSE
============================================================
Closed control loop over a fleet of bot-agent instances:

    poll health -> evaluate rules -> persist alerts
        -> notify -> remediate -> re-poll

============================================================
MODULES
============================================================
- health_poller: bounded-concurrency polling of agent gateways
- health_aggregator: fleet and workspace roll-ups
- alerts: rule evaluators, alert store, evaluation engine
- notifications: Slack, webhook and Telegram delivery
- remediation: per-alert automated repair
- diagnostics: structured troubleshooting and doctor checks
- log_streaming: shared upstream log streams per instance
- scheduler: the two periodic ticks
- cli: ``bot-fleet-monitor`` entry point

Service modules are imported directly from their submodules;
this package only re-exports data types and configuration.

============================================================
"""

from .config import (
    AlertSettings,
    DatabaseSettings,
    DiagnosticsSettings,
    MonitoringConfig,
    NotificationSettings,
    PollerSettings,
    RuleSettings,
    get_config,
    set_config,
)
from .models import (
    AlertNotification,
    AlertPayload,
    AlertSummary,
    AuthCheck,
    ComponentHealth,
    DeepHealthResult,
    DiagnosticFinding,
    DiagnosticsReport,
    DoctorReport,
    EvaluationSummary,
    FleetHealth,
    HealthHistoryPoint,
    PollSummary,
    RemediationResult,
    WorkspaceHealth,
)


__all__ = [
    # Config
    "MonitoringConfig",
    "PollerSettings",
    "AlertSettings",
    "RuleSettings",
    "DiagnosticsSettings",
    "NotificationSettings",
    "DatabaseSettings",
    "get_config",
    "set_config",

    # Models
    "AlertPayload",
    "AlertNotification",
    "AlertSummary",
    "EvaluationSummary",
    "PollSummary",
    "DeepHealthResult",
    "ComponentHealth",
    "FleetHealth",
    "WorkspaceHealth",
    "HealthHistoryPoint",
    "RemediationResult",
    "DiagnosticFinding",
    "DiagnosticsReport",
    "AuthCheck",
    "DoctorReport",
]
