"""
Agent Protocol Package.

Client for the agent gateway each bot instance exposes.
"""

from agent_protocol.client import AgentClient, ClientFactory, default_client_factory
from agent_protocol.exceptions import (
    AgentAuthError,
    AgentConnectionError,
    AgentProtocolError,
    AgentRpcError,
    AgentTimeoutError,
)
from agent_protocol.models import (
    AgentAuth,
    AgentHealth,
    AgentStatus,
    AuthMode,
    ChannelHealth,
    ConnectionOptions,
)


__all__ = [
    "AgentClient",
    "ClientFactory",
    "default_client_factory",
    "AgentProtocolError",
    "AgentConnectionError",
    "AgentTimeoutError",
    "AgentAuthError",
    "AgentRpcError",
    "AgentAuth",
    "AgentHealth",
    "AgentStatus",
    "AuthMode",
    "ChannelHealth",
    "ConnectionOptions",
]
