"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the custom exception hierarchy for the fleet monitor.

- Provides clear exception hierarchy
- Enables specific error handling
- Includes context for debugging

============================================================
EXCEPTION HIERARCHY
============================================================
MonitoringError (base)
├── ConfigurationError
├── NotFoundError
│   ├── InstanceNotFoundError
│   ├── FleetNotFoundError
│   └── AlertNotFoundError
└── CommunicationError
    └── (agent_protocol.exceptions.AgentProtocolError ...)

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for logging."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of error recoverability."""

    RECOVERABLE = "recoverable"
    """Error can be recovered from automatically."""

    TRANSIENT = "transient"
    """Temporary error, retry on the next tick may succeed."""

    NON_RECOVERABLE = "non_recoverable"
    """Permanent error, requires operator intervention."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class MonitoringError(Exception):
    """
    Base exception for all fleet monitor errors.

    All exceptions carry:
    - severity: for log level selection
    - details: for debugging
    - classification: for retry decisions
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_classification: ErrorClassification = ErrorClassification.RECOVERABLE

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        details: Optional[Dict[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.details = details or {}
        self.classification = classification or self.default_classification
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.details["cause_type"] = type(cause).__name__
            self.details["cause_message"] = str(cause)

    @property
    def is_recoverable(self) -> bool:
        """Check if error is recoverable."""
        return self.classification in (
            ErrorClassification.RECOVERABLE,
            ErrorClassification.TRANSIENT,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "classification": self.classification.value,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(MonitoringError):
    """Error in configuration."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})

        if config_key:
            details["config_key"] = config_key
        if actual_value is not None:
            details["actual_value"] = str(actual_value)[:100]

        super().__init__(message, details=details, **kwargs)


# ============================================================
# LOOKUP ERRORS
# ============================================================

class NotFoundError(MonitoringError):
    """A referenced entity does not exist."""

    default_severity = Severity.LOW
    entity_name: str = "Entity"

    def __init__(self, entity_id: str, **kwargs):
        details = kwargs.pop("details", {})
        details["entity_id"] = entity_id
        super().__init__(f"{self.entity_name} {entity_id} not found", details=details, **kwargs)
        self.entity_id = entity_id


class InstanceNotFoundError(NotFoundError):
    entity_name = "Instance"


class FleetNotFoundError(NotFoundError):
    entity_name = "Fleet"


class AlertNotFoundError(NotFoundError):
    entity_name = "Alert"


# ============================================================
# COMMUNICATION ERRORS
# ============================================================

class CommunicationError(MonitoringError):
    """Error talking to a remote endpoint."""

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.TRANSIENT


__all__ = [
    "Severity",
    "ErrorClassification",
    "MonitoringError",
    "ConfigurationError",
    "NotFoundError",
    "InstanceNotFoundError",
    "FleetNotFoundError",
    "AlertNotFoundError",
    "CommunicationError",
]
