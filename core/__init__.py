"""
Core Module Package.

This package contains the core infrastructure components
that all other modules depend on.

Components:
- clock: Unified time abstraction
- exceptions: Custom exception hierarchy
"""

from .clock import ClockProtocol, SystemClock, MockClock, ClockFactory, now_utc
from .exceptions import (
    MonitoringError,
    ConfigurationError,
    NotFoundError,
    InstanceNotFoundError,
    FleetNotFoundError,
    AlertNotFoundError,
    CommunicationError,
)


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ClockFactory",
    "now_utc",
    "MonitoringError",
    "ConfigurationError",
    "NotFoundError",
    "InstanceNotFoundError",
    "FleetNotFoundError",
    "AlertNotFoundError",
    "CommunicationError",
]
