"""
Fleet Domain ORM Models.

============================================================
PURPOSE
============================================================
Models for the monitored fleet: fleets, bot instances, the agent
connection of each instance, channel pairing sessions and
service profiles.

============================================================
DATA LIFECYCLE ROLE
============================================================
- Stage: OPERATIONAL
- Mutability: MUTABLE (health fields written by the poller,
  status written by remediation)
- Consumers: Health poller, alert engine, diagnostics

============================================================
MODELS
============================================================
- Fleet: Group of instances sharing budgets
- BotInstance: One deployed bot-agent process
- AgentConnection: Gateway endpoint of an instance (one per instance)
- ChannelAuthSession: Per-channel pairing state
- ServiceProfile: Service wiring of an instance

============================================================
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base, TimestampMixin, new_id
from storage.models.enums import (
    ChannelAuthState,
    ConnectionStatus,
    HealthState,
    InstanceStatus,
)


class Fleet(Base, TimestampMixin):
    """A named group of bot instances."""

    __tablename__ = "fleets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Fleet display name"
    )

    def __repr__(self) -> str:
        return f"<Fleet {self.name}>"


class BotInstance(Base, TimestampMixin):
    """
    One deployed bot-agent process.

    ============================================================
    OWNERSHIP
    ============================================================
    - health, error_count, last_error, last_health_check_at:
      written by the health poller
    - status: written by remediation and lifecycle operations
    - config_hash: desired configuration hash

    ============================================================
    """

    __tablename__ = "bot_instances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    fleet_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("fleets.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=InstanceStatus.CREATING.value,
        comment="CREATING, RUNNING, DEGRADED, STOPPED, ERROR, DELETING"
    )

    # Health
    health: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=HealthState.UNKNOWN.value,
        comment="HEALTHY, DEGRADED, UNHEALTHY, UNKNOWN"
    )

    config_hash: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        comment="Desired configuration hash"
    )

    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    last_health_check_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(),
        nullable=True,
    )

    # Deployment
    desired_manifest: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        comment="Desired agent manifest"
    )

    applied_manifest_version: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )

    deployment_type: Mapped[Optional[str]] = mapped_column(
        String(40),
        nullable=True,
        comment="Deployment target, e.g. docker, ecs, local"
    )

    __table_args__ = (
        Index("idx_bot_instances_fleet", "fleet_id"),
        Index("idx_bot_instances_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<BotInstance {self.name} status={self.status} health={self.health}>"


class AgentConnection(Base, TimestampMixin):
    """Gateway endpoint of an instance, as last observed by the poller."""

    __tablename__ = "agent_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    instance_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bot_instances.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    host: Mapped[str] = mapped_column(String(255), nullable=False)

    port: Mapped[int] = mapped_column(Integer, nullable=False)

    auth_mode: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="token",
        comment="token or password"
    )

    auth_token: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Token or password, depending on auth_mode"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ConnectionStatus.DISCONNECTED.value,
        comment="CONNECTED, DISCONNECTED, ERROR"
    )

    last_heartbeat: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    latency_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    config_hash: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        comment="Config hash the agent reports as applied"
    )

    def __repr__(self) -> str:
        return f"<AgentConnection {self.host}:{self.port} status={self.status}>"


class ChannelAuthSession(Base, TimestampMixin):
    """Pairing state of one chat channel of an instance."""

    __tablename__ = "channel_auth_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    instance_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bot_instances.id", ondelete="CASCADE"),
        nullable=False,
    )

    channel_type: Mapped[str] = mapped_column(String(40), nullable=False)

    state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ChannelAuthState.PENDING.value,
        comment="PENDING, PAIRED, EXPIRED, ERROR"
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_channel_auth_instance", "instance_id"),
    )


class ServiceProfile(Base, TimestampMixin):
    """Service wiring of an instance (e.g. which messaging service it fronts)."""

    __tablename__ = "service_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    instance_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bot_instances.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    service_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    service_type: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
