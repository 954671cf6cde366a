"""
Enumerations shared by the ORM models and the monitoring services.

Values are stored verbatim in string columns; every enum subclasses
``str`` so that raw column values compare equal to members.
"""

from enum import Enum


class InstanceStatus(str, Enum):
    """Lifecycle status of a bot instance."""
    CREATING = "CREATING"
    RUNNING = "RUNNING"
    DEGRADED = "DEGRADED"
    STOPPED = "STOPPED"
    ERROR = "ERROR"
    DELETING = "DELETING"


class HealthState(str, Enum):
    """Coarse machine health written by the poller."""
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"
    UNKNOWN = "UNKNOWN"


class ConnectionStatus(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"


class ChannelAuthState(str, Enum):
    """Pairing state of a channel auth session."""
    PENDING = "PENDING"
    PAIRED = "PAIRED"
    EXPIRED = "EXPIRED"
    ERROR = "ERROR"


class AlertSeverity(str, Enum):
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"

    @property
    def rank(self) -> int:
        """Higher is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.ERROR: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    SUPPRESSED = "SUPPRESSED"


class AlertRule(str, Enum):
    """The closed set of alert rules evaluated every tick."""
    UNREACHABLE_INSTANCE = "unreachable_instance"
    DEGRADED_INSTANCE = "degraded_instance"
    CONFIG_DRIFT = "config_drift"
    CHANNEL_AUTH_EXPIRED = "channel_auth_expired"
    HEALTH_CHECK_FAILED = "health_check_failed"
    TOKEN_SPIKE = "token_spike"
    BUDGET_WARNING = "budget_warning"
    BUDGET_CRITICAL = "budget_critical"


class RemediationAction(str, Enum):
    RESTART = "restart"
    RECONCILE = "reconcile"
    RE_PAIR_CHANNEL = "re-pair-channel"
    RUN_DOCTOR = "run-doctor"
    REVIEW_COSTS = "review_costs"


class NotificationChannelType(str, Enum):
    SLACK_WEBHOOK = "SLACK_WEBHOOK"
    WEBHOOK = "WEBHOOK"
    TELEGRAM = "TELEGRAM"
