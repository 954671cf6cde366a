"""
ORM Models Package.

Importing this package registers every table on ``Base.metadata``.
"""

from storage.models.base import Base, TimestampMixin, new_id, utcnow
from storage.models.costs import BudgetConfig, CostEvent
from storage.models.enums import (
    AlertRule,
    AlertSeverity,
    AlertStatus,
    ChannelAuthState,
    ConnectionStatus,
    HealthState,
    InstanceStatus,
    NotificationChannelType,
    RemediationAction,
)
from storage.models.fleet import (
    AgentConnection,
    BotInstance,
    ChannelAuthSession,
    Fleet,
    ServiceProfile,
)
from storage.models.monitoring import HealthAlert, HealthSnapshot, NotificationChannel


__all__ = [
    "Base",
    "TimestampMixin",
    "new_id",
    "utcnow",
    # Enums
    "AlertRule",
    "AlertSeverity",
    "AlertStatus",
    "ChannelAuthState",
    "ConnectionStatus",
    "HealthState",
    "InstanceStatus",
    "NotificationChannelType",
    "RemediationAction",
    # Fleet
    "Fleet",
    "BotInstance",
    "AgentConnection",
    "ChannelAuthSession",
    "ServiceProfile",
    # Monitoring
    "HealthSnapshot",
    "HealthAlert",
    "NotificationChannel",
    # Costs
    "BudgetConfig",
    "CostEvent",
]
