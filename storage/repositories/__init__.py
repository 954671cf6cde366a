"""
Repository Layer Package.

============================================================
PURPOSE
============================================================
The Repository Layer is the ONLY gateway to persistent storage.
All database access MUST go through repository classes.

============================================================
ARCHITECTURE PRINCIPLES
============================================================
1. Session Injection: Sessions are injected, not created internally
2. Explicit Methods: Clear method names per query
3. Exception Handling: All DB errors wrapped in repository exceptions
4. Caller owns the transaction: repositories flush, never commit

============================================================
"""

from storage.repositories.base import BaseRepository
from storage.repositories.costs import BudgetConfigRepository, CostEventRepository, TokenWindow
from storage.repositories.exceptions import (
    DatabaseUnavailableError,
    DuplicateRecordError,
    IntegrityError,
    QueryError,
    RecordNotFoundError,
    RepositoryException,
    TransactionError,
)
from storage.repositories.instances import (
    ChannelAuthRepository,
    ConnectionRepository,
    FleetRepository,
    InstanceRepository,
    ServiceProfileRepository,
)
from storage.repositories.monitoring import (
    AlertFilter,
    HealthAlertRepository,
    HealthSnapshotRepository,
    NotificationChannelRepository,
)


__all__ = [
    "BaseRepository",
    # Exceptions
    "RepositoryException",
    "RecordNotFoundError",
    "DuplicateRecordError",
    "IntegrityError",
    "QueryError",
    "DatabaseUnavailableError",
    "TransactionError",
    # Fleet
    "FleetRepository",
    "InstanceRepository",
    "ConnectionRepository",
    "ChannelAuthRepository",
    "ServiceProfileRepository",
    # Monitoring
    "HealthSnapshotRepository",
    "HealthAlertRepository",
    "NotificationChannelRepository",
    "AlertFilter",
    # Costs
    "BudgetConfigRepository",
    "CostEventRepository",
    "TokenWindow",
]
