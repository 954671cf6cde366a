"""
Agent Protocol Exceptions.

Raised by AgentClient. The poller, diagnostics and remediation
never let these escape: they become instance state or
``reachable=False`` results.
"""

from typing import Any, Dict, Optional

from core.exceptions import CommunicationError, Severity


class AgentProtocolError(CommunicationError):
    """Base class for agent gateway errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        **kwargs,
    ):
        details = dict(details or {})
        if code:
            details["code"] = code
        super().__init__(message, details=details, **kwargs)
        self.code = code


class AgentConnectionError(AgentProtocolError):
    """Socket failure, handshake rejection or unexpected close."""
    pass


class AgentTimeoutError(AgentProtocolError):
    """Handshake or RPC did not complete within the timeout."""
    pass


class AgentAuthError(AgentConnectionError):
    """The gateway rejected our credentials."""

    default_severity = Severity.HIGH


class AgentRpcError(AgentProtocolError):
    """The gateway answered a request with an error payload."""
    pass


__all__ = [
    "AgentProtocolError",
    "AgentConnectionError",
    "AgentTimeoutError",
    "AgentAuthError",
    "AgentRpcError",
]
